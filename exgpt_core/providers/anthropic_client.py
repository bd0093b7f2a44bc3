"""Anthropic Messages API 适配器。

本模块负责：

1. 接收统一的 ChatRequest。
2. 将其转换为 Messages API 的请求 JSON（工具、扩展推理、interleaved beta 头）。
3. 调用 HTTP 接口并处理网络/API 异常。
4. 流式调用：把 SSE 事件解析为有序的 TextDelta / ReasoningDelta /
   BlockComplete / StreamEnd；非流式调用：解析为 ChatResult。

流式响应必须以 message_stop 结束，否则视为格式错误（ApiError）。
"""

import json
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional

import httpx

from exgpt_core.config.settings import settings as default_settings
from exgpt_core.domain.exceptions import ApiError, NetworkError, RateLimitError
from exgpt_core.domain.models import (
    BlockComplete,
    ChatRequest,
    ChatResult,
    ChatUsage,
    ReasoningDelta,
    StreamEnd,
    StreamEvent,
    TextDelta,
)
from exgpt_core.providers.registry import (
    INTERLEAVED_THINKING_BETA,
    RATE_LIMIT_STATUSES,
    get_endpoint_config,
)
from exgpt_core.tools.definitions import ToolDef


class AnthropicClient:
    """Messages API 客户端。

    每次调用都会新建一个 httpx.AsyncClient，凭据在构造时固定；
    凭据变化时由 ClientContext 重新构造一个新实例。
    """

    name = "anthropic"

    def __init__(self, api_key: str, cfg=None):
        self._api_key = api_key
        self._settings = cfg or default_settings
        self._endpoint = get_endpoint_config(self.name, self._settings)

    @property
    def api_key(self) -> str:
        return self._api_key

    async def create(self, req: ChatRequest) -> ChatResult:
        """执行一次非流式调用。"""

        payload = self.build_payload(req, stream=False)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.post(
                    self._endpoint.messages_url,
                    json=payload,
                    headers=self._headers(req),
                )
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        _raise_for_status(resp.status_code, resp.text)
        try:
            data = resp.json()
        except ValueError as e:
            raise ApiError(code="MALFORMED_RESPONSE", message=str(e), http_status=502)
        return self._parse_response(data, req)

    async def stream(self, req: ChatRequest) -> AsyncIterator[StreamEvent]:
        """执行一次流式调用，按到达顺序 yield StreamEvent。"""

        payload = self.build_payload(req, stream=True)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream(
                    "POST",
                    self._endpoint.messages_url,
                    json=payload,
                    headers=self._headers(req),
                ) as resp:
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        _raise_for_status(resp.status_code, body)
                    parser = SseEventParser()
                    async for line in resp.aiter_lines():
                        for event in parser.feed_line(line):
                            yield event
                    for event in parser.close():
                        yield event
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

    def build_payload(self, req: ChatRequest, stream: bool) -> Dict[str, Any]:
        """将 ChatRequest 转成 Messages API 所需的请求 JSON。"""

        payload: Dict[str, Any] = {
            "model": req.model,
            "max_tokens": req.max_tokens,
            "messages": req.messages,
        }
        if req.system:
            payload["system"] = req.system
        if req.tools:
            payload["tools"] = [self._serialize_tool(tool) for tool in req.tools]
        if req.thinking_budget:
            payload["thinking"] = {"type": "enabled", "budget_tokens": req.thinking_budget}
        if stream:
            payload["stream"] = True
        return payload

    def _headers(self, req: ChatRequest) -> Dict[str, str]:
        headers = {
            "x-api-key": self._api_key,
            "anthropic-version": self._endpoint.api_version,
            "content-type": "application/json",
        }
        if req.interleaved:
            headers["anthropic-beta"] = INTERLEAVED_THINKING_BETA
        return headers

    def _serialize_tool(self, tool: ToolDef) -> Dict[str, Any]:
        """把内部的 ToolDef 转成 Messages API 的工具描述。"""

        properties: Dict[str, Any] = {}
        required: List[str] = []
        for name, param in tool.params.items():
            properties[name] = param.schema or {"type": "string"}
            if param.description:
                properties[name] = {
                    **properties[name],
                    "description": param.description,
                }
            if param.required:
                required.append(name)
        return {
            "name": tool.name,
            "description": tool.description,
            "input_schema": {
                "type": "object",
                "properties": properties,
                "required": required,
            },
        }

    def _parse_response(self, data: Dict[str, Any], req: ChatRequest) -> ChatResult:
        usage_raw = data.get("usage") or {}
        return ChatResult(
            model=data.get("model") or req.model,
            content=list(data.get("content") or []),
            stop_reason=data.get("stop_reason"),
            usage=ChatUsage(
                input_tokens=usage_raw.get("input_tokens", 0),
                output_tokens=usage_raw.get("output_tokens", 0),
            ),
            raw=data,
        )


def _raise_for_status(status: int, body: str) -> None:
    if status in RATE_LIMIT_STATUSES:
        # 限流/过载交给上层提示用户稍后重试
        raise RateLimitError(code="RATE_LIMIT", message=_error_message(body), http_status=status)
    if status >= 400:
        raise ApiError(code="API_ERROR", message=_error_message(body), http_status=status)


def _error_message(body: str) -> str:
    """从错误响应中取出 error.message，取不到就返回原文。"""

    try:
        data = json.loads(body)
    except (TypeError, ValueError):
        return body
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
    return body


def _parse_arguments(raw: str) -> Dict[str, Any]:
    """解析 tool_use 的 input JSON，失败时保留原始字符串到 ``_raw``。"""

    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return {"_raw": raw}
    return value if isinstance(value, dict) else {"_raw": raw}


class SseEventParser:
    """把 Messages API 的 SSE 行解析为 StreamEvent。

    一个事件由若干 ``data:`` 行组成，以空行结束；事件类型取自 JSON 的
    ``type`` 字段，``event:`` 行只做校验用途，这里忽略。
    """

    def __init__(self) -> None:
        self._data_lines: List[str] = []
        self._blocks: Dict[int, Dict[str, Any]] = {}
        self._partial_json: Dict[int, str] = {}
        self._stop_reason: Optional[str] = None
        self._usage = ChatUsage()
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def feed_line(self, line: str) -> List[StreamEvent]:
        line = line.rstrip("\r")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return []
        if line.startswith("data:"):
            self._data_lines.append(line[5:].lstrip())
        return []

    def close(self) -> List[StreamEvent]:
        events = self._dispatch()
        if not self._finished:
            raise ApiError(
                code="MALFORMED_STREAM",
                message="stream ended before message_stop",
                http_status=502,
            )
        return events

    def _dispatch(self) -> List[StreamEvent]:
        if not self._data_lines:
            return []
        raw = "\n".join(self._data_lines)
        self._data_lines = []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            raise ApiError(code="MALFORMED_STREAM", message=f"invalid event data: {raw[:200]}", http_status=502)
        return self._handle(data)

    def _handle(self, data: Dict[str, Any]) -> List[StreamEvent]:
        kind = data.get("type")
        if kind == "message_start":
            usage = (data.get("message") or {}).get("usage") or {}
            self._usage.input_tokens = usage.get("input_tokens", 0)
            return []
        if kind == "content_block_start":
            return self._block_start(data.get("index", 0), dict(data.get("content_block") or {}))
        if kind == "content_block_delta":
            return self._block_delta(data.get("index", 0), data.get("delta") or {})
        if kind == "content_block_stop":
            return self._block_stop(data.get("index", 0))
        if kind == "message_delta":
            delta = data.get("delta") or {}
            if delta.get("stop_reason"):
                self._stop_reason = delta["stop_reason"]
            usage = data.get("usage") or {}
            if "output_tokens" in usage:
                self._usage.output_tokens = usage["output_tokens"]
            return []
        if kind == "message_stop":
            self._finished = True
            return [StreamEnd(stop_reason=self._stop_reason, usage=self._usage)]
        if kind == "error":
            err = data.get("error") or {}
            message = err.get("message") or "stream error"
            if err.get("type") == "overloaded_error":
                raise RateLimitError(code="RATE_LIMIT", message=message, http_status=529)
            raise ApiError(code="API_ERROR", message=message, http_status=502)
        # ping 以及未知事件类型忽略
        return []

    def _block_start(self, index: int, block: Dict[str, Any]) -> List[StreamEvent]:
        block_type = block.get("type")
        events: List[StreamEvent] = []
        if block_type == "text":
            block["text"] = block.get("text") or ""
            if block["text"]:
                events.append(TextDelta(text=block["text"]))
        elif block_type == "thinking":
            block["thinking"] = block.get("thinking") or ""
            block.setdefault("signature", "")
            if block["thinking"]:
                events.append(ReasoningDelta(text=block["thinking"]))
        elif block_type == "tool_use":
            self._partial_json[index] = ""
        self._blocks[index] = block
        return events

    def _block_delta(self, index: int, delta: Dict[str, Any]) -> List[StreamEvent]:
        block = self._blocks.get(index)
        if block is None:
            raise ApiError(code="MALFORMED_STREAM", message=f"delta for unknown block {index}", http_status=502)
        delta_type = delta.get("type")
        if delta_type == "text_delta":
            text = delta.get("text") or ""
            block["text"] = block.get("text", "") + text
            return [TextDelta(text=text)] if text else []
        if delta_type == "thinking_delta":
            text = delta.get("thinking") or ""
            block["thinking"] = block.get("thinking", "") + text
            return [ReasoningDelta(text=text)] if text else []
        if delta_type == "signature_delta":
            block["signature"] = block.get("signature", "") + (delta.get("signature") or "")
            return []
        if delta_type == "input_json_delta":
            self._partial_json[index] = self._partial_json.get(index, "") + (delta.get("partial_json") or "")
            return []
        return []

    def _block_stop(self, index: int) -> List[StreamEvent]:
        block = self._blocks.pop(index, None)
        if block is None:
            return []
        if block.get("type") == "tool_use":
            partial = self._partial_json.pop(index, "")
            if partial:
                block["input"] = _parse_arguments(partial)
            else:
                block["input"] = block.get("input") or {}
        return [BlockComplete(kind=str(block.get("type") or ""), payload=block)]


def iter_completion_events(result: ChatResult) -> Iterator[StreamEvent]:
    """把一次性响应的内容块按流式事件的形状重放。

    非流式模式据此复用同一套状态机：文本块产出一个 TextDelta，
    thinking 块产出一个 ReasoningDelta，每个块最后都有 BlockComplete。
    """

    for block in result.content:
        block_type = block.get("type")
        if block_type == "text" and block.get("text"):
            yield TextDelta(text=block["text"])
        elif block_type == "thinking" and block.get("thinking"):
            yield ReasoningDelta(text=block["thinking"])
        yield BlockComplete(kind=str(block_type or ""), payload=dict(block))
    yield StreamEnd(stop_reason=result.stop_reason, usage=result.usage)
