import logging

import httpx
import pytest

from swap_advisor.domain.exceptions import BusinessError, ChatTimeoutError, NetworkError, UpstreamError, ValidationError
from swap_advisor.domain.models import ChatMessage
from swap_advisor.infrastructure.storage.memory_store import InMemorySessionStore
from swap_advisor.providers.coze_client import CozeChatClient


BASE = "https://api.coze.test"
CREATE = "/v1/conversation/create"
CHAT = "/v3/chat"
RETRIEVE = "/v3/chat/retrieve"
MESSAGES = "/v3/chat/message/list"


class SettingsStub:
    coze_api_token = "pat_test_token_123"
    coze_bot_id = "bot-1"
    coze_api_base = BASE
    http_timeout = 1.0
    poll_interval = 1.0
    poll_max_retries = 30


class Resp:
    def __init__(self, body=None, status_code=200, chunks=None, text="", headers=None):
        self._body = body
        self.status_code = status_code
        self.headers = headers or {}
        self._chunks = list(chunks or [])
        self.text = text

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body

    def read(self):
        return self.text.encode()

    def iter_bytes(self):
        for chunk in self._chunks:
            yield chunk.encode() if isinstance(chunk, str) else chunk


class StreamContext:
    def __init__(self, response):
        self._response = response

    def __enter__(self):
        return self._response

    def __exit__(self, *args):
        return False


class FakeHttp:
    """替代 httpx.Client：按路径返回预置响应，并记录所有请求。"""

    def __init__(self, routes=None, stream_response=None):
        self._routes = {path: list(resps) for path, resps in (routes or {}).items()}
        self._stream_response = stream_response
        self.calls = []

    def __call__(self, *a, **kw):
        return self

    def __enter__(self):
        return self

    def __exit__(self, *a):
        return False

    def request(self, method, url, headers=None, params=None, json=None):
        path = url[len(BASE):]
        self.calls.append({"method": method, "path": path, "params": params, "json": json, "headers": headers})
        resps = self._routes[path]
        if isinstance(resps[0], Exception):
            raise resps.pop(0)
        return resps.pop(0) if len(resps) > 1 else resps[0]

    def stream(self, method, url, params=None, json=None, headers=None):
        self.calls.append({"method": method, "path": url[len(BASE):], "params": params, "json": json, "headers": headers})
        return StreamContext(self._stream_response)

    def count(self, path):
        return sum(1 for c in self.calls if c["path"] == path)


def ok(data):
    return Resp({"code": 0, "msg": "", "data": data})


def status(value):
    return ok({"id": "chat-1", "conversation_id": "conv-1", "status": value})


def make_client(monkeypatch, http, store=None):
    monkeypatch.setattr("httpx.Client", http)
    sleeps = []
    client = CozeChatClient(SettingsStub(), store=store if store is not None else InMemorySessionStore(), sleep=sleeps.append)
    return client, sleeps


# ---- 会话 ----


def test_resolve_conversation_creates_once(monkeypatch):
    http = FakeHttp({CREATE: [ok({"id": "conv-1"})]})
    client, _ = make_client(monkeypatch, http)

    assert client.resolve_conversation("u1") == "conv-1"
    assert client.resolve_conversation("u1") == "conv-1"
    assert http.count(CREATE) == 1
    body = http.calls[0]["json"]
    assert body["user_id"] == "u1"
    assert body["additional_messages"] == []
    assert body["stream"] is False
    assert http.calls[0]["headers"]["Authorization"] == "Bearer pat_test_token_123"


def test_resolve_conversation_per_user(monkeypatch):
    http = FakeHttp({CREATE: [ok({"id": "conv-a"}), ok({"id": "conv-b"})]})
    client, _ = make_client(monkeypatch, http)

    assert client.resolve_conversation("a") == "conv-a"
    assert client.resolve_conversation("b") == "conv-b"
    assert client.resolve_conversation("a") == "conv-a"
    assert http.count(CREATE) == 2


def test_resolve_conversation_failure_is_not_cached(monkeypatch):
    http = FakeHttp({CREATE: [Resp({"code": 4100, "msg": "bad token"}), ok({"id": "conv-2"})]})
    store = InMemorySessionStore()
    client, _ = make_client(monkeypatch, http, store=store)

    assert client.resolve_conversation("u1") == ""
    assert store.get("u1") is None
    assert client.resolve_conversation("u1") == "conv-2"
    assert http.count(CREATE) == 2


def test_resolve_conversation_network_error(monkeypatch):
    http = FakeHttp({CREATE: [httpx.ConnectError("boom")]})
    client, _ = make_client(monkeypatch, http)

    assert client.resolve_conversation("u1") == ""


def test_missing_token_raises_validation_error(monkeypatch):
    class NoToken(SettingsStub):
        coze_api_token = None

    monkeypatch.setattr("httpx.Client", FakeHttp())
    client = CozeChatClient(NoToken(), store=InMemorySessionStore(), sleep=lambda s: None)
    with pytest.raises(ValidationError):
        client.send("hi", "u1", use_streaming=False)


# ---- 轮询 ----


def test_polling_end_to_end(monkeypatch):
    http = FakeHttp({
        CREATE: [ok({"id": "conv-1"})],
        CHAT: [ok({"id": "chat-1", "conversation_id": "conv-1"})],
        RETRIEVE: [status("created"), status("in_progress"), status("completed")],
        MESSAGES: [ok([
            {"id": "m1", "role": "assistant", "content": "done", "content_type": "text", "type": "answer", "created_at": 1},
        ])],
    })
    client, sleeps = make_client(monkeypatch, http)
    fragments = []

    result = client.send("1 ETH to USDC", "u1", on_fragment=fragments.append, use_streaming=False)

    assert result == "done"
    assert http.count(RETRIEVE) == 3
    assert http.count(MESSAGES) == 1
    assert fragments == []
    assert sleeps == [1.0, 1.0]
    submit = next(c for c in http.calls if c["path"] == CHAT)
    assert submit["json"]["stream"] is False
    assert submit["json"]["conversation_id"] == "conv-1"
    assert submit["json"]["additional_messages"] == [
        {"role": "user", "content": "1 ETH to USDC", "content_type": "text"}
    ]


def test_polling_uses_server_corrected_conversation(monkeypatch):
    http = FakeHttp({
        CREATE: [ok({"id": "conv-1"})],
        CHAT: [ok({"id": "chat-9", "conversation_id": "conv-fixed"})],
        RETRIEVE: [status("completed")],
        MESSAGES: [ok([])],
    })
    client, _ = make_client(monkeypatch, http)

    assert client.send("q", "u1", use_streaming=False) == ""
    retrieve = next(c for c in http.calls if c["path"] == RETRIEVE)
    assert retrieve["params"] == {"chat_id": "chat-9", "conversation_id": "conv-fixed"}


def test_polling_timeout(monkeypatch):
    class FewRetries(SettingsStub):
        poll_max_retries = 5

    http = FakeHttp({
        CREATE: [ok({"id": "conv-1"})],
        CHAT: [ok({"id": "chat-1", "conversation_id": "conv-1"})],
        RETRIEVE: [status("in_progress")],
    })
    monkeypatch.setattr("httpx.Client", http)
    client = CozeChatClient(FewRetries(), store=InMemorySessionStore(), sleep=lambda s: None)

    with pytest.raises(ChatTimeoutError):
        client.send("q", "u1", use_streaming=False)
    assert http.count(RETRIEVE) == 5
    assert http.count(MESSAGES) == 0


def test_polling_keeps_waiting_through_failed_status(monkeypatch):
    http = FakeHttp({
        CREATE: [ok({"id": "conv-1"})],
        CHAT: [ok({"id": "chat-1", "conversation_id": "conv-1"})],
        RETRIEVE: [status("failed"), status("requires_action"), status("canceled"), status("completed")],
        MESSAGES: [ok([{"role": "assistant", "type": "answer", "content": "late"}])],
    })
    client, sleeps = make_client(monkeypatch, http)

    assert client.send("q", "u1", use_streaming=False) == "late"
    assert http.count(RETRIEVE) == 4
    assert len(sleeps) == 3


def test_polling_returns_last_assistant_answer(monkeypatch):
    http = FakeHttp({
        CREATE: [ok({"id": "conv-1"})],
        CHAT: [ok({"id": "chat-1", "conversation_id": "conv-1"})],
        RETRIEVE: [status("completed")],
        MESSAGES: [ok([
            {"role": "assistant", "type": "answer", "content": "first"},
            {"role": "assistant", "type": "function_call", "content": "{}"},
            {"role": "user", "type": "answer", "content": "not me"},
            {"role": "assistant", "type": "answer", "content": "second"},
            {"role": "assistant", "type": "follow_up", "content": "anything else?"},
        ])],
    })
    client, _ = make_client(monkeypatch, http)

    assert client.send("q", "u1", use_streaming=False) == "second"


def test_submit_error_carries_upstream_message(monkeypatch):
    http = FakeHttp({
        CREATE: [ok({"id": "conv-1"})],
        CHAT: [Resp({"code": 4015, "msg": "bot not published"})],
    })
    client, _ = make_client(monkeypatch, http)

    with pytest.raises(UpstreamError) as exc:
        client.send("q", "u1", use_streaming=False)
    assert exc.value.message == "bot not published"
    assert exc.value.extra["step"] == "submit"
    assert exc.value.extra["upstream_code"] == 4015


def test_poll_error_fails_immediately(monkeypatch):
    http = FakeHttp({
        CREATE: [ok({"id": "conv-1"})],
        CHAT: [ok({"id": "chat-1", "conversation_id": "conv-1"})],
        RETRIEVE: [Resp({"code": 4000, "msg": "chat not found"})],
    })
    client, sleeps = make_client(monkeypatch, http)

    with pytest.raises(UpstreamError):
        client.send("q", "u1", use_streaming=False)
    assert http.count(RETRIEVE) == 1
    assert sleeps == []


def test_message_list_http_error(monkeypatch):
    http = FakeHttp({
        CREATE: [ok({"id": "conv-1"})],
        CHAT: [ok({"id": "chat-1", "conversation_id": "conv-1"})],
        RETRIEVE: [status("completed")],
        MESSAGES: [Resp(status_code=502, text="bad gateway")],
    })
    client, _ = make_client(monkeypatch, http)

    with pytest.raises(UpstreamError) as exc:
        client.send("q", "u1", use_streaming=False)
    assert exc.value.http_status == 502


def test_create_failure_surfaces_as_transport_error(monkeypatch):
    http = FakeHttp({
        CREATE: [Resp({"code": 4100, "msg": "bad token"})],
        CHAT: [Resp({"code": 4000, "msg": "conversation_id required"})],
    })
    client, _ = make_client(monkeypatch, http)

    with pytest.raises(UpstreamError) as exc:
        client.send("q", "u1", use_streaming=False)
    assert exc.value.message == "conversation_id required"
    assert http.count(CREATE) == 1
    submit = next(c for c in http.calls if c["path"] == CHAT)
    assert submit["json"]["conversation_id"] == ""


# ---- 流式 ----


def test_streaming_cumulative_fragments(monkeypatch):
    chunks = [
        'event:conversation.message.completed\ndata:{"role":"assistant","type":"answer","content":"H"}\n',
        'data:{"role":"assistant","type":"answer","content":"He"}\n',
        'data:{"role":"assistant","type":"answer","content":"Hell"}\n',
        'data:{"role":"assistant","type":"answer","content":"Hello"}\n',
        "event:done\ndata:[DONE]\n",
    ]
    http = FakeHttp({CREATE: [ok({"id": "conv-1"})]}, stream_response=Resp(chunks=chunks))
    client, _ = make_client(monkeypatch, http)
    fragments = []

    result = client.send("1 ETH to USDC", "u1", on_fragment=fragments.append)

    assert result == "Hello"
    assert fragments == ["H", "e", "ll", "o"]
    call = next(c for c in http.calls if c["path"] == CHAT)
    assert call["params"] == {"conversation_id": "conv-1"}
    assert call["json"]["stream"] is True
    assert call["json"]["query"] == "1 ETH to USDC"


def test_streaming_sends_history_without_mutating_it(monkeypatch):
    http = FakeHttp({CREATE: [ok({"id": "conv-1"})]}, stream_response=Resp(chunks=[]))
    client, _ = make_client(monkeypatch, http)
    history = [ChatMessage(role="assistant", content="hi", type="answer")]

    assert client.send("swap", "u1", history=history) == ""
    assert len(history) == 1
    sent = next(c for c in http.calls if c["path"] == CHAT)["json"]["additional_messages"]
    assert sent == [
        {"role": "assistant", "content": "hi", "content_type": "text", "type": "answer"},
        {"role": "user", "content": "swap", "content_type": "text"},
    ]


def test_streaming_http_error(monkeypatch):
    http = FakeHttp({CREATE: [ok({"id": "conv-1"})]}, stream_response=Resp(status_code=401, text="unauthorized"))
    client, _ = make_client(monkeypatch, http)
    fragments = []

    with pytest.raises(UpstreamError) as exc:
        client.send("q", "u1", on_fragment=fragments.append)
    assert exc.value.http_status == 401
    assert fragments == []

    assert client.stream_chat("conv-1", "u1", "q") == ""


def test_streaming_network_error(monkeypatch):
    class BrokenStream(Resp):
        def iter_bytes(self):
            yield b'data:{"role":"assistant","type":"answer","content":"par"}\n'
            raise httpx.ReadError("connection reset")

    http = FakeHttp({CREATE: [ok({"id": "conv-1"})]}, stream_response=BrokenStream())
    client, _ = make_client(monkeypatch, http)

    with pytest.raises(NetworkError):
        client.send("q", "u1")


def test_chat_with_explicit_conversation_skips_create(monkeypatch):
    http = FakeHttp(
        stream_response=Resp(chunks=['data:{"role":"assistant","type":"answer","content":"ok"}\n']),
    )
    client, _ = make_client(monkeypatch, http)

    assert client.chat("conv-x", "u1", "q", use_stream=True) == "ok"
    assert http.count(CREATE) == 0


def test_streaming_rejected_with_json_envelope(monkeypatch):
    http = FakeHttp(
        {CREATE: [Resp({"code": 4100, "msg": "bad token"})]},
        stream_response=Resp(chunks=['{"code":4000,"msg":"conversation_id required"}']),
    )
    client, _ = make_client(monkeypatch, http)
    fragments = []

    with pytest.raises(UpstreamError) as exc:
        client.send("q", "u1", on_fragment=fragments.append)
    assert exc.value.message == "conversation_id required"
    assert exc.value.extra["step"] == "stream"
    assert exc.value.extra["upstream_code"] == 4000
    assert fragments == []
    call = next(c for c in http.calls if c["path"] == CHAT)
    assert call["params"] == {"conversation_id": ""}


def test_streaming_rejected_with_json_content_type(monkeypatch):
    body = {"code": 4015, "msg": "bot not published"}
    http = FakeHttp(
        {CREATE: [ok({"id": "conv-1"})]},
        stream_response=Resp(body, headers={"content-type": "application/json; charset=utf-8"}),
    )
    client, _ = make_client(monkeypatch, http)

    with pytest.raises(UpstreamError) as exc:
        client.send("q", "u1")
    assert exc.value.message == "bot not published"


def test_stream_chat_lenient_on_missing_token(monkeypatch):
    class NoToken(SettingsStub):
        coze_api_token = None

    monkeypatch.setattr("httpx.Client", FakeHttp(stream_response=Resp(chunks=[])))
    client = CozeChatClient(NoToken(), store=InMemorySessionStore(), sleep=lambda s: None)

    assert client.stream_chat("conv-1", "u1", "q") == ""


def test_store_write_failure_keeps_created_conversation(monkeypatch):
    class ReadOnlyStore(InMemorySessionStore):
        def set(self, user_key, conversation_id):
            raise BusinessError(code="STORE_WRITE_ERROR", message="disk full")

    http = FakeHttp({CREATE: [ok({"id": "conv-1"})]})
    client, _ = make_client(monkeypatch, http, store=ReadOnlyStore())

    assert client.resolve_conversation("u1") == "conv-1"
    assert client.store.get("u1") is None


def test_log_records_carry_provider_name(monkeypatch, caplog):
    http = FakeHttp({CREATE: [ok({"id": "conv-1"})]})
    client, _ = make_client(monkeypatch, http)

    with caplog.at_level(logging.INFO, logger="swap_advisor"):
        client.resolve_conversation("u1")
    records = [r for r in caplog.records if r.getMessage() == "Created conversation"]
    assert records[0].extra["provider"] == "coze"
    assert records[0].extra["conversation_id"] == "conv-1"
