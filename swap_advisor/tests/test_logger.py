from pathlib import Path

from swap_advisor.infrastructure.logging.logger import logger


def test_logger_writes_project_log_file():
    files = [Path(h.baseFilename).name for h in logger.handlers if hasattr(h, "baseFilename")]
    assert files == ["swap_advisor.log"]
