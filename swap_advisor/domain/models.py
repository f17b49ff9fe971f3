"""统一的对话数据模型。

本模块定义了与上游 Chat 服务交互时共享的标准数据结构：

- ChatMessage: 一条对话消息（user/assistant/system）。
- ChatHandle: 非流式提交后上游分配的对话句柄（chat_id + conversation_id）。
- DeltaPayload / CumulativePayload: 流式响应中两种形态的回复载荷。
- StreamUpdate: 解码一条载荷后得到的“新增片段 + 当前全文”。

HTTP 适配层（coze_client）负责在上游 JSON 与这些结构之间做转换。
"""

from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional, Union


# 消息角色类型
Role = Literal["user", "assistant", "system"]

# 消息类型：问题或答案，用于从消息列表里筛选助手回复
TurnKind = Literal["question", "answer"]

# 轮询模式下对话的状态
ChatStatus = Literal["created", "in_progress", "completed", "failed", "requires_action", "canceled"]

COMPLETED: ChatStatus = "completed"


@dataclass
class ChatMessage:
    """一条对话消息。

    - role: 消息角色。
    - content: 纯文本内容。
    - content_type: 固定为 "text"。
    - type: 可选的消息类型（question/answer）。
    """

    role: Role
    content: str
    content_type: Literal["text"] = "text"
    type: Optional[TurnKind] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "role": self.role,
            "content": self.content,
            "content_type": self.content_type,
        }
        if self.type:
            payload["type"] = self.type
        return payload


@dataclass
class ChatHandle:
    """一次非流式对话提交后的句柄，后续轮询与取结果都依赖它。"""

    chat_id: str
    conversation_id: str


@dataclass
class DeltaPayload:
    """`event:conversation.message.delta` 之后的 data 行：content 是增量。"""

    content: str


@dataclass
class CumulativePayload:
    """裸 `data:` 行（assistant + answer）：content 是截至目前的完整回复。"""

    content: str


StreamPayload = Union[DeltaPayload, CumulativePayload]


@dataclass
class StreamUpdate:
    """一次解码的结果。

    fragment 为本次真正新增的文本（可能为空字符串），total 为累积后的全文。
    """

    fragment: str
    total: str
