"""Coze Chat 客户端。

本模块负责：

1. 为每个用户维护上游会话 ID（首次使用时创建，之后复用）。
2. 流式传输：提交 stream=true 的请求，逐块解码事件流并回调文本片段。
3. 轮询传输：提交 stream=false 的请求 -> 轮询状态直到 completed -> 拉取消息列表取最终回复。
4. 对外统一的 send() 入口，屏蔽两种传输方式的差异，只返回纯文本。

上游所有接口都以 ``code == 0`` 表示成功，失败原因在 ``msg`` 字段中。
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

import httpx

from swap_advisor.config.settings import settings
from swap_advisor.domain.exceptions import (
    BusinessError,
    ChatTimeoutError,
    NetworkError,
    UpstreamError,
    ValidationError,
)
from swap_advisor.domain.models import COMPLETED, ChatHandle, ChatMessage
from swap_advisor.domain.session import SessionStore
from swap_advisor.infrastructure.logging.logger import logger
from swap_advisor.infrastructure.storage.memory_store import InMemorySessionStore
from swap_advisor.providers.base import FragmentSink
from swap_advisor.providers.registry import COZE_CONFIG, EndpointConfig
from swap_advisor.providers.stream_decoder import StreamDecoder


class CozeChatClient:
    """Coze 提供方客户端实现。

    - name: 提供方名称（供日志/调试使用）。
    - store: 用户 -> 会话 ID 的缓存，默认进程内字典，可替换为共享存储。
    - sleep: 轮询等待函数，测试中可替换为空操作。
    """

    name = "coze"

    def __init__(
        self,
        cfg=settings,
        store: Optional[SessionStore] = None,
        endpoints: Optional[EndpointConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._settings = cfg
        self._store = store if store is not None else InMemorySessionStore()
        base = getattr(cfg, "coze_api_base", None) or COZE_CONFIG.base_url
        self._endpoints = endpoints or COZE_CONFIG.with_base_url(base)
        self._sleep = sleep

    @property
    def store(self) -> SessionStore:
        return self._store

    # ---- 会话 ----

    def resolve_conversation(self, user_key: str) -> str:
        """返回用户的会话 ID，没有则向上游创建一个。

        创建失败时只记录日志并返回空字符串，不向上抛出；
        后续请求带着空会话 ID 发出，由传输层报告上游错误。
        """

        cached = self._store.get(user_key)
        if cached:
            return cached
        try:
            conversation_id = self._create_conversation(user_key)
        except BusinessError as e:
            self._log(logging.ERROR, "Create conversation failed", user_id=user_key, code=e.code, error=e.message)
            return ""
        try:
            self._store.set(user_key, conversation_id)
        except BusinessError as e:
            # 会话已在上游创建，本次照常使用，只是不缓存
            self._log(logging.ERROR, "Cache conversation failed", user_id=user_key, conversation_id=conversation_id, code=e.code, error=e.message)
            return conversation_id
        self._log(logging.INFO, "Created conversation", user_id=user_key, conversation_id=conversation_id)
        return conversation_id

    def _create_conversation(self, user_key: str) -> str:
        payload = {
            "bot_id": self._settings.coze_bot_id,
            "user_id": user_key,
            "stream": False,
            "auto_save_history": True,
            "additional_messages": [],
        }
        with self._http() as client:
            body = self._request(client, "POST", self._endpoints.create_conversation_url, step="create", json=payload)
        conversation_id = (body.get("data") or {}).get("id")
        if not conversation_id:
            raise UpstreamError(code="INVALID_RESPONSE", message="conversation id missing", step="create")
        return str(conversation_id)

    # ---- 对外入口 ----

    def send(
        self,
        query: str,
        user_key: str,
        on_fragment: Optional[FragmentSink] = None,
        use_streaming: bool = True,
        history: Optional[List[ChatMessage]] = None,
    ) -> str:
        """发送一次问答并返回完整回复。

        use_streaming 为 False 时 on_fragment 永远不会被调用，回复只通过返回值给出。

        Raises:
            UpstreamError: 上游返回非 0 业务码或非 2xx 状态（含网络错误 NetworkError）。
            ChatTimeoutError: 轮询次数耗尽仍未完成。
        """

        conversation_id = self.resolve_conversation(user_key)
        return self._dispatch(conversation_id, user_key, query, history, use_streaming, on_fragment)

    def chat(
        self,
        conversation_id: str,
        user_id: str,
        query: str,
        messages: Optional[List[ChatMessage]] = None,
        use_stream: bool = False,
        on_fragment: Optional[FragmentSink] = None,
    ) -> str:
        """使用显式的会话 ID 发起问答；会话 ID 为空时先为 user_id 解析一个。"""

        conversation_id = conversation_id or self.resolve_conversation(user_id)
        return self._dispatch(conversation_id, user_id, query, messages, use_stream, on_fragment)

    def _dispatch(
        self,
        conversation_id: str,
        user_id: str,
        query: str,
        messages: Optional[List[ChatMessage]],
        use_stream: bool,
        on_fragment: Optional[FragmentSink],
    ) -> str:
        try:
            if use_stream:
                return self.stream_reply(conversation_id, user_id, query, messages, on_fragment)
            return self.poll_reply(conversation_id, user_id, query)
        except BusinessError as e:
            self._log(
                logging.ERROR,
                f"Chat failed: {e.message}",
                user_id=user_id,
                conversation_id=conversation_id,
                code=e.code,
                stream=use_stream,
            )
            raise

    # ---- 流式 ----

    def stream_chat(
        self,
        conversation_id: str,
        user_id: str,
        query: str,
        messages: Optional[List[ChatMessage]] = None,
        on_fragment: Optional[FragmentSink] = None,
    ) -> str:
        """宽松版流式调用：请求失败时记录日志并返回空字符串。"""

        try:
            return self.stream_reply(conversation_id, user_id, query, messages, on_fragment)
        except BusinessError as e:
            self._log(logging.ERROR, "Stream request failed", conversation_id=conversation_id, code=e.code, error=e.message)
            return ""

    def stream_reply(
        self,
        conversation_id: str,
        user_id: str,
        query: str,
        messages: Optional[List[ChatMessage]] = None,
        on_fragment: Optional[FragmentSink] = None,
    ) -> str:
        """流式调用，逐块解码并把新增片段交给 on_fragment，返回累积的全文。"""

        history = list(messages or [])
        history.append(ChatMessage(role="user", content=query))
        payload = {
            "bot_id": self._settings.coze_bot_id,
            "user_id": user_id,
            "query": query,
            "additional_messages": [m.to_payload() for m in history],
            "stream": True,
            "auto_save_history": True,
        }
        decoder = StreamDecoder()
        try:
            with self._http() as client:
                with client.stream(
                    "POST",
                    self._endpoints.chat_url,
                    params={"conversation_id": conversation_id},
                    json=payload,
                    headers=self._headers(),
                ) as resp:
                    if resp.status_code >= 400:
                        resp.read()
                        raise UpstreamError(
                            code="HTTP_ERROR",
                            message=resp.text,
                            http_status=resp.status_code,
                            step="stream",
                        )
                    if "application/json" in resp.headers.get("content-type", ""):
                        resp.read()
                        self._check_envelope(self._parse_json(resp, "stream"), "stream")
                    for chunk in resp.iter_bytes():
                        self._emit(decoder.feed(chunk), on_fragment)
                    self._emit(decoder.finish(), on_fragment)
                    # 上游以 200 + JSON 信封拒绝请求时，正文里没有任何事件行
                    envelope = decoder.unframed_body()
                    if envelope is not None:
                        self._check_envelope(envelope, "stream")
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e), step="stream")
        return decoder.text

    @staticmethod
    def _emit(fragments: List[str], on_fragment: Optional[FragmentSink]) -> None:
        if on_fragment is None:
            return
        for fragment in fragments:
            on_fragment(fragment)

    # ---- 轮询 ----

    def poll_reply(self, conversation_id: str, user_id: str, query: str) -> str:
        """非流式调用：提交 -> 等待完成 -> 取最终回复。"""

        with self._http() as client:
            handle = self._submit(client, conversation_id, user_id, query)
            self._wait_for_completion(client, handle)
            reply = self._fetch_final_reply(client, handle)
        self._log(logging.INFO, "Chat completed", conversation_id=handle.conversation_id, chat_id=handle.chat_id, reply_chars=len(reply))
        return reply

    def _submit(self, client: httpx.Client, conversation_id: str, user_id: str, query: str) -> ChatHandle:
        payload = {
            "bot_id": self._settings.coze_bot_id,
            "user_id": user_id,
            "additional_messages": [ChatMessage(role="user", content=query).to_payload()],
            "stream": False,
            "auto_save_history": True,
            "conversation_id": conversation_id,
        }
        body = self._request(
            client,
            "POST",
            self._endpoints.chat_url,
            step="submit",
            params={"conversation_id": conversation_id},
            json=payload,
        )
        data = body.get("data") or {}
        # 上游可能修正会话 ID，以返回值为准
        return ChatHandle(chat_id=str(data.get("id") or ""), conversation_id=str(data.get("conversation_id") or conversation_id))

    def _wait_for_completion(
        self,
        client: httpx.Client,
        handle: ChatHandle,
        max_retries: Optional[int] = None,
        interval: Optional[float] = None,
    ) -> None:
        """按固定间隔轮询状态直到 completed。

        failed/canceled/requires_action 与 in_progress 同样处理：继续等待直到次数耗尽。
        """

        max_retries = max_retries or self._settings.poll_max_retries
        interval = self._settings.poll_interval if interval is None else interval
        for attempt in range(1, max_retries + 1):
            body = self._request(
                client,
                "GET",
                self._endpoints.retrieve_url,
                step="retrieve",
                params={"chat_id": handle.chat_id, "conversation_id": handle.conversation_id},
            )
            status = (body.get("data") or {}).get("status")
            logger.debug("poll attempt=%s status=%s chat_id=%s", attempt, status, handle.chat_id)
            if status == COMPLETED:
                return
            if attempt < max_retries:
                self._sleep(interval)
        self._log(logging.WARNING, "Chat polling timed out", chat_id=handle.chat_id, attempts=max_retries)
        raise ChatTimeoutError(
            code="POLL_TIMEOUT",
            message=f"chat {handle.chat_id} not completed after {max_retries} attempts",
            http_status=504,
            chat_id=handle.chat_id,
        )

    def _fetch_final_reply(self, client: httpx.Client, handle: ChatHandle) -> str:
        body = self._request(
            client,
            "GET",
            self._endpoints.message_list_url,
            step="message_list",
            params={"chat_id": handle.chat_id, "conversation_id": handle.conversation_id},
        )
        replies = [
            m for m in (body.get("data") or [])
            if isinstance(m, dict) and m.get("role") == "assistant" and m.get("type") == "answer"
        ]
        if not replies:
            return ""
        return replies[-1].get("content") or ""

    # ---- 辅助方法 ----

    def _http(self) -> httpx.Client:
        return httpx.Client(timeout=self._settings.http_timeout, trust_env=False)

    def _headers(self) -> Dict[str, str]:
        token = getattr(self._settings, "coze_api_token", None)
        if not token:
            raise ValidationError(code="MISSING_API_KEY", message="COZE_API_TOKEN not set")
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    def _request(self, client: httpx.Client, method: str, url: str, step: str, **kwargs: Any) -> Dict[str, Any]:
        """发送请求并校验 ``{code, msg, data}`` 信封，返回解析后的 JSON。"""

        headers = self._headers()
        try:
            resp = client.request(method, url, headers=headers, **kwargs)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e), step=step)
        if resp.status_code >= 400:
            raise UpstreamError(code="HTTP_ERROR", message=resp.text, http_status=resp.status_code, step=step)
        return self._check_envelope(self._parse_json(resp, step), step)

    @staticmethod
    def _parse_json(resp: httpx.Response, step: str) -> Dict[str, Any]:
        try:
            body = resp.json()
        except ValueError:
            raise UpstreamError(code="INVALID_RESPONSE", message=f"{step}: response is not JSON", step=step)
        if not isinstance(body, dict):
            raise UpstreamError(code="INVALID_RESPONSE", message=f"{step}: unexpected response", step=step)
        return body

    @staticmethod
    def _check_envelope(body: Dict[str, Any], step: str) -> Dict[str, Any]:
        if body.get("code") != 0:
            raise UpstreamError(
                code="UPSTREAM_ERROR",
                message=body.get("msg") or f"{step} failed",
                step=step,
                upstream_code=body.get("code"),
            )
        return body

    def _log(self, level: int, message: str, **fields: Any) -> None:
        fields.setdefault("provider", self._endpoints.name)
        logger.log(level, message, extra={"extra": fields})
