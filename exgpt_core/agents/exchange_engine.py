"""对话交换引擎。

把一次用户输入变成一串有序的异步事件（文本增量、推理增量、工具调用、
工具结果、完成/失败），期间可能与端点往返多轮（工具循环），
并保证在中途失败时持久化的会话保持一致：

- conduct：追加用户消息并发起交换；失败时从内存中移除该用户消息，
  存储不做任何写入，部分生成的助手文本直接丢弃。
- regenerate：把历史截断到 ``messages[:from_index]`` 后重新发起。
- edit：截断并替换为新的用户消息，只写存储，不访问端点。
- generate_title：一次性调用生成短标题，失败时回退为 Untitled Chat。

同一会话内的交换与编辑通过 asyncio.Lock 串行执行（排队）。
提交时通过 store.update 重新读取会话，只替换 messages 与 updated_at，
不会覆盖并发写入的标题。
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence
from uuid import uuid4

from exgpt_core.agents.request_builder import RequestPlan, build_plan, history_messages
from exgpt_core.capabilities.registry import Mode
from exgpt_core.config.settings import settings as default_settings
from exgpt_core.domain.conversation import Conversation, ConversationStore
from exgpt_core.domain.events import (
    EventChannel,
    ExchangeCompleted,
    ExchangeEvent,
    ExchangeFailed,
    ReasoningDeltaEvent,
    TextDeltaEvent,
    ToolResultEvent,
    ToolUseEvent,
)
from exgpt_core.domain.exceptions import ApiError, BusinessError, ToolLoopLimitError, ValidationError
from exgpt_core.domain.models import (
    BlockComplete,
    ChatRequest,
    Message,
    ReasoningDelta,
    StreamEnd,
    StreamEvent,
    TextDelta,
    ToolInvocation,
)
from exgpt_core.infrastructure.logging.logger import log_event
from exgpt_core.infrastructure.storage.json_store import UNTITLED
from exgpt_core.prompts import load_title_prompt
from exgpt_core.providers import ClientContext
from exgpt_core.providers.anthropic_client import iter_completion_events
from exgpt_core.providers.base import ProviderClient
from exgpt_core.providers.registry import TITLE_MAX_TOKENS
from exgpt_core.tools.definitions import ToolCall, ToolDef
from exgpt_core.tools.executor import ToolExecutor

TOOL_PREVIEW_CHARS = 200


class TurnPhase(str, Enum):
    SENDING = "sending"
    STREAMING = "streaming"
    TOOL_PENDING = "tool_pending"
    FINALIZING = "finalizing"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass
class ExchangeState:
    """单次交换的临时状态，跨工具轮次累积。"""

    text: str = ""
    reasoning_buffer: str = ""
    reasoning: List[str] = field(default_factory=list)
    reasoning_index: int = 0
    invocations: List[ToolInvocation] = field(default_factory=list)
    pending: List[ToolCall] = field(default_factory=list)
    # 当前轮次的出站内容块（按到达顺序），工具循环时原样回传
    blocks: List[Dict[str, Any]] = field(default_factory=list)
    phase: TurnPhase = TurnPhase.SENDING
    rounds: int = 0
    # 本轮是否已输出过非空白文本
    round_has_text: bool = False
    stop_reason: Optional[str] = None
    ended: bool = False
    input_tokens: int = 0
    output_tokens: int = 0

    def begin_round(self) -> None:
        self.phase = TurnPhase.SENDING
        self.round_has_text = False
        self.reasoning_buffer = ""
        self.pending = []
        self.blocks = []
        self.stop_reason = None
        self.ended = False

    def to_message(self) -> Message:
        return Message(
            role="assistant",
            content=self.text,
            reasoning=tuple(self.reasoning) or None,
            tool_invocations=tuple(self.invocations) or None,
            created_at=datetime.now(timezone.utc),
        )


class ExchangeEngine:
    def __init__(
        self,
        store: ConversationStore,
        clients: ClientContext,
        settings_store,
        modes: Sequence[Mode],
        tool_executor: Optional[ToolExecutor] = None,
        tool_defs: Optional[List[ToolDef]] = None,
        cfg=None,
    ):
        self._store = store
        self._clients = clients
        self._settings_store = settings_store
        self._modes = list(modes)
        self._tool_executor = tool_executor or ToolExecutor({})
        self._tool_defs = list(tool_defs or [])
        self._cfg = cfg or default_settings
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def clients(self) -> ClientContext:
        return self._clients

    async def conduct(
        self,
        conversation_id: str,
        user_text: str,
        channel: Optional[EventChannel] = None,
    ) -> Message:
        """追加一条用户消息并完成一次交换，返回提交的助手消息。"""

        log_ctx = self._log_ctx(conversation_id, "conduct")
        async with self._lock_for(conversation_id):
            user_msg = Message(role="user", content=user_text, created_at=datetime.now(timezone.utc))
            conv: Optional[Conversation] = None
            try:
                conv = await self._load(conversation_id)
                conv.messages.append(user_msg)
                return await self._exchange(conv, list(conv.messages), channel, log_ctx)
            except Exception as exc:
                # 回滚：只撤销本次追加的用户消息
                if conv is not None and conv.messages and conv.messages[-1] is user_msg:
                    conv.messages.pop()
                await self._fail(channel, conversation_id, exc, log_ctx)
                raise

    async def regenerate(
        self,
        conversation_id: str,
        from_index: int,
        channel: Optional[EventChannel] = None,
    ) -> Message:
        """把历史截断到 ``messages[:from_index]`` 后重新生成助手回复。"""

        log_ctx = self._log_ctx(conversation_id, "regenerate", from_index=from_index)
        async with self._lock_for(conversation_id):
            try:
                conv = await self._load(conversation_id)
                if from_index < 1 or from_index > len(conv.messages):
                    raise ValidationError(
                        code="INVALID_INDEX",
                        message=f"cannot regenerate from index {from_index}",
                        conversation_id=conversation_id,
                    )
                history = conv.messages[:from_index]
                if history[-1].role != "user":
                    raise ValidationError(
                        code="INVALID_INDEX",
                        message="history must end with a user message",
                        conversation_id=conversation_id,
                    )
                return await self._exchange(conv, history, channel, log_ctx)
            except Exception as exc:
                await self._fail(channel, conversation_id, exc, log_ctx)
                raise

    async def edit(self, conversation_id: str, index: int, new_text: str) -> Conversation:
        """用新的用户消息替换 ``messages[index:]`` 并持久化，不访问端点。"""

        log_ctx = self._log_ctx(conversation_id, "edit", index=index)
        async with self._lock_for(conversation_id):
            conv = await self._load(conversation_id)
            if index < 0 or index >= len(conv.messages) or conv.messages[index].role != "user":
                raise ValidationError(
                    code="INVALID_INDEX",
                    message=f"message {index} is not a user message",
                    conversation_id=conversation_id,
                )
            edited = Message(role="user", content=new_text, created_at=datetime.now(timezone.utc))

            def _apply(stored: Conversation) -> None:
                stored.messages = stored.messages[:index] + [edited]
                stored.updated_at = datetime.now(timezone.utc)

            updated = await self._store.update(conversation_id, _apply)
            log_event(logging.INFO, "Edited user message", log_ctx, message_count=len(updated.messages))
            return updated

    async def generate_title(self, conversation_id: str, user_text: str) -> str:
        """根据首条用户消息生成短标题并写入会话；任何失败都不抛出。"""

        log_ctx = self._log_ctx(conversation_id, "generate_title")
        title = UNTITLED
        try:
            client = self._clients.require()
            result = await client.create(
                ChatRequest(
                    model=self._cfg.title_model,
                    max_tokens=TITLE_MAX_TOKENS,
                    system=load_title_prompt(),
                    messages=[{"role": "user", "content": user_text}],
                )
            )
            title = result.text.strip().strip("\"'").strip() or UNTITLED
        except Exception as e:
            log_event(logging.WARNING, "Title generation failed", log_ctx, error=str(e))

        def _apply(stored: Conversation) -> None:
            stored.title = title
            stored.updated_at = datetime.now(timezone.utc)

        try:
            await self._store.update(conversation_id, _apply)
        except BusinessError as e:
            log_event(logging.WARNING, "Title write failed", log_ctx, error=e.message, code=e.code)
        log_event(logging.INFO, "Generated title", log_ctx, title=title)
        return title

    # ---- 交换主循环 ----

    async def _exchange(
        self,
        conv: Conversation,
        history: List[Message],
        channel: Optional[EventChannel],
        log_ctx: Dict[str, Any],
    ) -> Message:
        state = ExchangeState()
        try:
            return await self._drive(conv, history, state, channel, log_ctx)
        except Exception:
            failed_in = state.phase
            state.phase = TurnPhase.FAILED
            # 部分生成的文本不保存
            log_event(
                logging.WARNING,
                "Exchange aborted",
                log_ctx,
                phase=failed_in.value,
                rounds=state.rounds,
                discarded_chars=len(state.text),
            )
            raise

    async def _drive(
        self,
        conv: Conversation,
        history: List[Message],
        state: ExchangeState,
        channel: Optional[EventChannel],
        log_ctx: Dict[str, Any],
    ) -> Message:
        start_time = time.time()
        client = self._clients.require()
        user_settings = await self._settings_store.load()
        plan = build_plan(user_settings, self._modes, self._tool_defs, self._cfg)
        outbound = history_messages(history)

        while True:
            state.begin_round()
            req = plan.request(list(outbound))
            log_event(
                logging.INFO,
                "Calling provider",
                log_ctx,
                provider=client.name,
                model=plan.model,
                mode=plan.mode.name,
                round=state.rounds,
                message_count=len(outbound),
                tools=[t.name for t in plan.tools],
                thinking_budget=plan.thinking_budget,
                interleaved=plan.interleaved,
                streaming=plan.streaming,
            )
            state.phase = TurnPhase.STREAMING
            async for event in self._events(client, req, plan):
                await self._apply_event(state, event, conv.id, channel)
            if not state.ended:
                raise ApiError(code="MALFORMED_STREAM", message="stream ended without a stop event", http_status=502)

            if state.stop_reason == "tool_use" and state.pending:
                state.phase = TurnPhase.TOOL_PENDING
                if state.rounds >= self._cfg.max_tool_rounds:
                    raise ToolLoopLimitError(
                        code="TOOL_LOOP_LIMIT",
                        message=f"model kept requesting tools after {state.rounds} rounds",
                        http_status=502,
                        rounds=state.rounds,
                    )
                outbound.append({"role": "assistant", "content": list(state.blocks)})
                outbound.append({"role": "user", "content": await self._run_tools(state, conv.id, channel, log_ctx)})
                state.rounds += 1
                continue
            break

        state.phase = TurnPhase.FINALIZING
        message = state.to_message()
        committed = list(history) + [message]

        def _apply(stored: Conversation) -> None:
            stored.messages = list(committed)
            stored.updated_at = datetime.now(timezone.utc)

        await self._store.update(conv.id, _apply)
        conv.messages = committed
        state.phase = TurnPhase.COMMITTED
        log_event(
            logging.INFO,
            "Committed assistant message",
            log_ctx,
            elapsed_seconds=round(time.time() - start_time, 2),
            rounds=state.rounds,
            stop_reason=state.stop_reason,
            reasoning_segments=len(state.reasoning),
            tool_invocations=len(state.invocations),
            input_tokens=state.input_tokens,
            output_tokens=state.output_tokens,
        )
        await self._publish(channel, ExchangeCompleted(conv.id, message, streamed=plan.streaming))
        return message

    def _events(self, client: ProviderClient, req: ChatRequest, plan: RequestPlan) -> AsyncIterator[StreamEvent]:
        if plan.streaming:
            return client.stream(req)
        return self._replay_completion(client, req)

    @staticmethod
    async def _replay_completion(client: ProviderClient, req: ChatRequest) -> AsyncIterator[StreamEvent]:
        """非流式模式：一次性取回结果，再按流式事件重放。"""
        result = await client.create(req)
        for event in iter_completion_events(result):
            yield event

    async def _apply_event(
        self,
        state: ExchangeState,
        event: StreamEvent,
        conversation_id: str,
        channel: Optional[EventChannel],
    ) -> None:
        if isinstance(event, TextDelta):
            text = event.text
            if not state.round_has_text and text.strip():
                # 工具轮次之间的文本按段落分隔
                if state.text.strip():
                    text = "\n\n" + text.lstrip()
                state.round_has_text = True
            state.text += text
            await self._publish(channel, TextDeltaEvent(conversation_id, text, state.text))
        elif isinstance(event, ReasoningDelta):
            state.reasoning_buffer += event.text
            await self._publish(channel, ReasoningDeltaEvent(conversation_id, state.reasoning_index, event.text))
        elif isinstance(event, BlockComplete):
            await self._complete_block(state, event, conversation_id, channel)
        elif isinstance(event, StreamEnd):
            state.stop_reason = event.stop_reason
            state.ended = True
            if event.usage:
                state.input_tokens += event.usage.input_tokens
                state.output_tokens += event.usage.output_tokens

    async def _complete_block(
        self,
        state: ExchangeState,
        event: BlockComplete,
        conversation_id: str,
        channel: Optional[EventChannel],
    ) -> None:
        payload = event.payload
        if event.kind == "thinking":
            if state.reasoning_buffer:
                state.reasoning.append(state.reasoning_buffer)
                state.reasoning_index += 1
            state.reasoning_buffer = ""
            state.blocks.append(
                {
                    "type": "thinking",
                    "thinking": payload.get("thinking", ""),
                    "signature": payload.get("signature", ""),
                }
            )
        elif event.kind == "redacted_thinking":
            state.blocks.append({"type": "redacted_thinking", "data": payload.get("data", "")})
        elif event.kind == "text":
            if payload.get("text"):
                state.blocks.append({"type": "text", "text": payload["text"]})
        elif event.kind == "tool_use":
            call = ToolCall(
                id=str(payload.get("id") or f"toolu_{uuid4().hex}"),
                name=str(payload.get("name") or ""),
                arguments=dict(payload.get("input") or {}),
            )
            state.invocations.append(ToolInvocation(name=call.name, input=call.arguments))
            state.pending.append(call)
            state.blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments})
            await self._publish(channel, ToolUseEvent(conversation_id, call.name, call.arguments))

    async def _run_tools(
        self,
        state: ExchangeState,
        conversation_id: str,
        channel: Optional[EventChannel],
        log_ctx: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        """按到达顺序执行本轮所有待处理的工具调用，返回 tool_result 块。"""

        results: List[Dict[str, Any]] = []
        for call in state.pending:
            log_event(logging.INFO, "Executing tool", log_ctx, tool=call.name, tool_use_id=call.id)
            result = await self._tool_executor.execute(call)
            log_event(
                logging.INFO,
                "Tool finished",
                log_ctx,
                tool=call.name,
                tool_use_id=call.id,
                result_length=len(result.content),
            )
            results.append({"type": "tool_result", "tool_use_id": call.id, "content": result.content})
            await self._publish(
                channel,
                ToolResultEvent(conversation_id, call.name, result.content[:TOOL_PREVIEW_CHARS]),
            )
        state.pending = []
        return results

    # ---- 辅助 ----

    async def _load(self, conversation_id: str) -> Conversation:
        conv = await self._store.get(conversation_id)
        if conv is None:
            raise ValidationError(code="CONVERSATION_NOT_FOUND", message=conversation_id)
        return conv

    def forget(self, conversation_id: str) -> None:
        """会话删除后释放其锁；仍被持有的锁保留给排队中的交换。"""
        lock = self._locks.get(conversation_id)
        if lock is not None and not lock.locked():
            del self._locks[conversation_id]

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        return self._locks.setdefault(conversation_id, asyncio.Lock())

    async def _fail(
        self,
        channel: Optional[EventChannel],
        conversation_id: str,
        exc: Exception,
        log_ctx: Dict[str, Any],
    ) -> None:
        code = exc.code if isinstance(exc, BusinessError) else None
        message = exc.message if isinstance(exc, BusinessError) else str(exc)
        log_event(logging.ERROR, "Exchange failed", log_ctx, code=code, error=message)
        await self._publish(channel, ExchangeFailed(conversation_id, message, code))

    @staticmethod
    async def _publish(channel: Optional[EventChannel], event: ExchangeEvent) -> None:
        if channel is not None:
            await channel.publish(event)

    @staticmethod
    def _log_ctx(conversation_id: str, operation: str, **fields: Any) -> Dict[str, Any]:
        ctx: Dict[str, Any] = {
            "trace_id": f"tr-{uuid4().hex}",
            "conversation_id": conversation_id,
            "operation": operation,
        }
        ctx.update(fields)
        return ctx
