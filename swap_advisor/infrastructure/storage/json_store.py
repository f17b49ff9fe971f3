import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

from swap_advisor.config.settings import settings
from swap_advisor.domain.exceptions import BusinessError


class JsonSessionStore:
    """基于 JSON 文件的会话 ID 存储。

    多个进程指向同一个 storage_root 时可以共享用户 -> 会话映射。
    文件结构：
        {"sessions": {"<user_key>": {"conversation_id": "...", "created_at": "...Z"}}}
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._path = self._root / "sessions.json"

    def get(self, user_key: str) -> Optional[str]:
        entry = self._read().get(user_key)
        if not entry:
            return None
        return entry.get("conversation_id") or None

    def set(self, user_key: str, conversation_id: str) -> None:
        sessions = self._read()
        sessions[user_key] = {
            "conversation_id": conversation_id,
            "created_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        }
        self._write(sessions)

    def _read(self) -> Dict[str, Dict[str, Any]]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return {}
        sessions = data.get("sessions") if isinstance(data, dict) else None
        return sessions if isinstance(sessions, dict) else {}

    def _write(self, sessions: Dict[str, Dict[str, Any]]) -> None:
        tmp_path = self._root / f"sessions.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps({"sessions": sessions}, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))
