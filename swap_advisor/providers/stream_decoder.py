"""流式响应解码器。

上游的流式响应是一段持续的 UTF-8 文本，按行拆分后有两种有效形态：

1. ``event:conversation.message.delta`` 行之后的第一条 ``data:`` 行，
   JSON 中的 content 是**增量**（role/content 可能嵌套在 data 字段里，也可能在顶层）。
2. 裸 ``data:`` 行，role == assistant 且 type == answer，content 是截至目前的**完整回复**，
   需要和已累积的文本做差得到真正新增的部分。

两种载荷都通过 ``_apply`` 统一成 StreamUpdate（新增片段 + 当前全文）。
无法解析的行直接跳过；出现 ``[DONE]`` 时丢弃本块剩余的行。
"""

import codecs
import json
from typing import Any, Dict, List, Optional

from swap_advisor.domain.exceptions import MalformedPayloadError
from swap_advisor.domain.models import CumulativePayload, DeltaPayload, StreamPayload, StreamUpdate


DELTA_EVENT = "event:conversation.message.delta"
DATA_PREFIX = "data:"
DONE_MARKER = "[DONE]"


class StreamDecoder:
    """增量解码器，每个流式请求使用一个新实例。"""

    def __init__(self) -> None:
        self._text = ""
        self._pending = ""
        self._awaiting_delta = False
        self._framed = False
        self._unframed: List[str] = []
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def text(self) -> str:
        """目前累积的完整回复。"""

        return self._text

    def feed(self, chunk: bytes | str) -> List[str]:
        """喂入一个数据块，返回本块产生的非空文本片段（按顺序）。

        最后一行若没有换行符，会暂存到下一块再处理。
        """

        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        lines = (self._pending + chunk).split("\n")
        self._pending = lines.pop()
        return self._process(lines)

    def unframed_body(self) -> Optional[Dict[str, Any]]:
        """流中从未出现事件行时，把正文当作 JSON 信封解析。

        只有包含 code 字段的 JSON 对象才返回，其他情况返回 None。
        """

        if self._framed or not self._unframed:
            return None
        try:
            body = json.loads("".join(self._unframed))
        except json.JSONDecodeError:
            return None
        if isinstance(body, dict) and "code" in body:
            return body
        return None

    def finish(self) -> List[str]:
        """流结束时处理残留的最后一行。"""

        tail = self._pending + self._utf8.decode(b"", final=True)
        self._pending = ""
        return self._process([tail]) if tail.strip() else []

    def _process(self, lines: List[str]) -> List[str]:
        fragments: List[str] = []
        for raw in lines:
            line = raw.strip()
            if not line:
                continue
            if DONE_MARKER in line:
                # 本块剩余内容（包括未完成的行）一并丢弃
                self._pending = ""
                break
            if line.startswith("event:") or line.startswith(DATA_PREFIX):
                self._framed = True
            elif not self._framed:
                self._unframed.append(line)
            if line.startswith(DELTA_EVENT):
                self._awaiting_delta = True
                continue
            if not line.startswith(DATA_PREFIX):
                continue
            is_delta = self._awaiting_delta
            self._awaiting_delta = False
            try:
                payload = self._decode_line(line, is_delta)
            except MalformedPayloadError:
                continue
            if payload is None:
                continue
            update = self._apply(payload)
            self._text = update.total
            if update.fragment:
                fragments.append(update.fragment)
        return fragments

    @staticmethod
    def _decode_line(line: str, is_delta: bool) -> Optional[StreamPayload]:
        body = line[len(DATA_PREFIX):].strip()
        if not body:
            return None
        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            raise MalformedPayloadError(code="MALFORMED_PAYLOAD", message=str(e), line=line)
        if not isinstance(data, dict):
            return None
        if is_delta:
            return _delta_payload(data)
        return _cumulative_payload(data)

    def _apply(self, payload: StreamPayload) -> StreamUpdate:
        if isinstance(payload, DeltaPayload):
            return StreamUpdate(fragment=payload.content, total=self._text + payload.content)
        if len(payload.content) > len(self._text):
            return StreamUpdate(fragment=payload.content[len(self._text):], total=payload.content)
        return StreamUpdate(fragment="", total=self._text)


def _delta_payload(data: Dict[str, Any]) -> Optional[DeltaPayload]:
    nested = data.get("data") if isinstance(data.get("data"), dict) else {}
    role = nested.get("role") or data.get("role")
    content = nested.get("content") or data.get("content")
    if role == "assistant" and isinstance(content, str) and content:
        return DeltaPayload(content=content)
    return None


def _cumulative_payload(data: Dict[str, Any]) -> Optional[CumulativePayload]:
    content = data.get("content")
    if data.get("role") == "assistant" and data.get("type") == "answer" and content:
        return CumulativePayload(content=str(content))
    return None
