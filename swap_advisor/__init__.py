"""Swap Advisor 顶层包。

该包实现代币兑换意图助手的对话客户端：
为每个用户维护上游会话、通过流式或轮询两种方式获取 AI 回复，
并把回复归一化为纯文本交给路由处理器或 UI 层。
"""

from swap_advisor.api.service import send_message, send_message_stream
from swap_advisor.providers import create_chat_client

__all__ = ["create_chat_client", "send_message", "send_message_stream"]
