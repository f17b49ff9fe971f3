from typing import Optional, Protocol


class SessionStore(Protocol):
    """用户标识 -> 上游会话 ID 的映射存储。

    同一 user_key 一旦写入就不再替换，也没有过期；
    是否需要加锁或跨进程共享由具体实现决定。
    """

    def get(self, user_key: str) -> Optional[str]:
        ...

    def set(self, user_key: str, conversation_id: str) -> None:
        ...
