"""上游 Chat 服务集成层。

该包下的模块负责：
- 定义客户端抽象接口 (base)。
- 维护上游端点配置 (registry)。
- 解码流式响应 (stream_decoder)。
- 提供具体实现 (coze_client)。
"""

from typing import Callable, Optional

from swap_advisor.config.settings import settings
from swap_advisor.domain.session import SessionStore
from swap_advisor.infrastructure.storage.json_store import JsonSessionStore
from swap_advisor.infrastructure.storage.memory_store import InMemorySessionStore
from swap_advisor.providers.base import ChatClient
from swap_advisor.providers.coze_client import CozeChatClient


def create_session_store(cfg=None) -> SessionStore:
    """根据配置中的 session_backend 创建会话存储。"""

    cfg = cfg or settings
    if getattr(cfg, "session_backend", "memory") == "json":
        return JsonSessionStore(root=cfg.storage_root)
    return InMemorySessionStore()


def create_chat_client(
    cfg=None,
    store: Optional[SessionStore] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> ChatClient:
    """创建一个配置好的客户端实例；每次调用都返回新实例，调用方自行持有。"""

    cfg = cfg or settings
    kwargs = {"sleep": sleep} if sleep is not None else {}
    return CozeChatClient(cfg, store=store if store is not None else create_session_store(cfg), **kwargs)
