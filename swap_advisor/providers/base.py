"""Chat 客户端抽象接口。

上层（API 服务、路由处理器、UI 后端）不直接依赖具体厂商的 HTTP 细节，而是依赖此协议：

- 每个厂商实现一个 ChatClient（如 CozeChatClient）。
- 负责：维护用户会话、选择流式/轮询传输方式，并把回复归一化为纯文本。
"""

from typing import Callable, List, Optional, Protocol

from swap_advisor.domain.models import ChatMessage


FragmentSink = Callable[[str], None]


class ChatClient(Protocol):
    """Chat 客户端协议。

    实现者需要提供：
    - name: 厂商名称，用于日志/统计。
    - resolve_conversation(user_key): 取得（或创建）该用户的会话 ID，失败返回空字符串。
    - send(...): 执行一次问答，返回完整回复文本。
    """

    name: str

    def resolve_conversation(self, user_key: str) -> str:
        ...

    def send(
        self,
        query: str,
        user_key: str,
        on_fragment: Optional[FragmentSink] = None,
        use_streaming: bool = True,
        history: Optional[List[ChatMessage]] = None,
    ) -> str:
        ...
