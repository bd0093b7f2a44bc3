"""Orchestrator 对展示层发出的通知事件。

每一轮对话（一次 conduct/regenerate）会按到达顺序发出：
- 零个或多个 TextDeltaEvent
- 零个或多个 ReasoningDeltaEvent（带推理段序号）
- 零个或多个 ToolUseEvent / ToolResultEvent
- 恰好一个终止事件：ExchangeCompleted 或 ExchangeFailed

EventChannel 是一个基于 asyncio.Queue 的有序异步序列，
Orchestrator 负责 publish，Renderer 等订阅者用 ``async for`` 消费。
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from .models import Message


@dataclass
class TextDeltaEvent:
    conversation_id: str
    text: str
    full_text: str


@dataclass
class ReasoningDeltaEvent:
    conversation_id: str
    index: int
    text: str


@dataclass
class ToolUseEvent:
    conversation_id: str
    name: str
    input: Dict[str, Any]


@dataclass
class ToolResultEvent:
    conversation_id: str
    name: str
    preview: str


@dataclass
class ExchangeCompleted:
    conversation_id: str
    message: Message
    streamed: bool = True


@dataclass
class ExchangeFailed:
    conversation_id: str
    error: str
    code: Optional[str] = None


ExchangeEvent = Union[
    TextDeltaEvent,
    ReasoningDeltaEvent,
    ToolUseEvent,
    ToolResultEvent,
    ExchangeCompleted,
    ExchangeFailed,
]

TERMINAL_EVENTS = (ExchangeCompleted, ExchangeFailed)


@dataclass
class EventChannel:
    """单个订阅者的有序事件通道。

    迭代在收到终止事件后结束；终止事件本身也会被产出。
    """

    _queue: "asyncio.Queue[ExchangeEvent]" = field(default_factory=asyncio.Queue)
    history: List[ExchangeEvent] = field(default_factory=list)

    async def publish(self, event: ExchangeEvent) -> None:
        self.history.append(event)
        await self._queue.put(event)

    def __aiter__(self) -> AsyncIterator[ExchangeEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ExchangeEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if isinstance(event, TERMINAL_EVENTS):
                return
