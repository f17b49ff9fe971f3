"""对外 API 服务模块。

提供简化的函数接口供上层应用（路由处理器、UI 后端）调用。
"""

from typing import Optional

from swap_advisor.config.settings import settings
from swap_advisor.infrastructure.logging.logger import logger
from swap_advisor.providers import create_chat_client
from swap_advisor.providers.base import ChatClient, FragmentSink


_client: Optional[ChatClient] = None


def get_default_client() -> ChatClient:
    """获取按全局配置创建的默认客户端（首次调用时创建）。"""
    global _client
    if _client is None:
        _client = create_chat_client(settings)
    return _client


def send_message_stream(
    user_message: str,
    user_id: Optional[str] = None,
    on_chunk: Optional[FragmentSink] = None,
    use_stream: bool = True,
    client: Optional[ChatClient] = None,
) -> str:
    """向助手发送消息，流式模式下通过 on_chunk 实时接收片段。

    Args:
        user_message: 用户消息内容
        user_id: 用户 ID，默认取配置中的 default_user_id
        on_chunk: 接收片段的回调（仅流式模式）
        use_stream: 是否使用流式模式
        client: 显式传入的客户端，不传时使用默认客户端

    Returns:
        完整的助手回复内容

    Raises:
        各种 domain.exceptions 中定义的异常
    """
    user_id = user_id or settings.default_user_id
    chat_client = client or get_default_client()
    try:
        return chat_client.send(user_message, user_id, on_fragment=on_chunk, use_streaming=use_stream)
    except Exception as e:
        logger.error(f"Send message failed: {e}", extra={"extra": {
            "user_id": user_id,
            "stream": use_stream,
            "error": str(e),
        }})
        raise


def send_message(user_message: str, user_id: Optional[str] = None, client: Optional[ChatClient] = None) -> str:
    """非流式发送消息，等待完整回复后返回。"""
    return send_message_stream(user_message, user_id, on_chunk=None, use_stream=False, client=client)
