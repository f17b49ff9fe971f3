import threading
from typing import Dict, Optional


class InMemorySessionStore:
    """进程内的会话 ID 缓存，客户端默认使用。

    单次读写由锁保护；“先查后建”整体不是原子的，
    同一用户并发首次请求仍可能在上游创建两个会话，后写者生效。
    """

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, user_key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(user_key)

    def set(self, user_key: str, conversation_id: str) -> None:
        with self._lock:
            self._data[user_key] = conversation_id

    def __len__(self) -> int:
        return len(self._data)
