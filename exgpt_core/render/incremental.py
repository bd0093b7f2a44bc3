"""把 ExchangeEngine 的事件流渲染为 HTML。

IncrementalRenderer 按到达顺序消费 EventChannel：
- 每个文本增量都对完整累积文本重新渲染（streaming=True）；
- 推理增量按段序号累积；
- 工具调用生成一条状态提示（Searching / Fetching ...）；
- 完成事件触发一次权威的非流式渲染（finalize）。

对同一段完整文本，finalize 的结果与最后一次流式渲染相同。
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

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
from exgpt_core.render.markdown import RenderOptions, escape_html, render_markdown


def tool_notice(name: str, tool_input: Dict[str, Any]) -> str:
    """工具调用的状态提示文本。"""

    if name == "wolfram_alpha":
        label, detail = "Computing", tool_input.get("query")
    else:
        label, detail = "Fetching", tool_input.get("url")
    return f"{label}: {detail}" if detail else label


def format_timestamp_label(value: Optional[datetime]) -> str:
    if value is None:
        return ""
    return value.astimezone().strftime("%H:%M")


@dataclass
class IncrementalRenderer:
    options: RenderOptions = field(default_factory=RenderOptions)
    show_timestamps: bool = False
    text: str = ""
    html: str = ""
    reasoning: Dict[int, str] = field(default_factory=dict)
    tool_notices: List[str] = field(default_factory=list)
    tool_previews: List[str] = field(default_factory=list)
    timestamp: str = ""
    error: Optional[str] = None
    done: bool = False

    def on_event(self, event: ExchangeEvent) -> str:
        """处理单个事件，返回当前的正文 HTML。"""

        if isinstance(event, TextDeltaEvent):
            self.text = event.full_text
            self.html = render_markdown(self.text, self.options, streaming=True)
        elif isinstance(event, ReasoningDeltaEvent):
            self.reasoning[event.index] = self.reasoning.get(event.index, "") + event.text
        elif isinstance(event, ToolUseEvent):
            self.tool_notices.append(tool_notice(event.name, event.input))
        elif isinstance(event, ToolResultEvent):
            self.tool_previews.append(event.preview)
        elif isinstance(event, ExchangeCompleted):
            if self.show_timestamps:
                self.timestamp = format_timestamp_label(event.message.created_at)
            self.finalize(event.message.content)
        elif isinstance(event, ExchangeFailed):
            # 失败时丢弃部分文本
            self.error = event.error
            self.text = ""
            self.html = ""
            self.done = True
        return self.html

    async def consume(self, channel: EventChannel) -> str:
        async for event in channel:
            self.on_event(event)
        return self.html

    def finalize(self, text: Optional[str] = None) -> str:
        if text is not None:
            self.text = text
        self.html = render_markdown(self.text, self.options, streaming=False)
        self.done = True
        return self.html

    def reasoning_segments(self) -> List[str]:
        """按序号排列的推理段（已转义，可直接放进 <pre>）。"""
        return [escape_html(self.reasoning[i]) for i in sorted(self.reasoning)]
