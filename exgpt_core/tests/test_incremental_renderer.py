from datetime import datetime, timezone

import pytest

from exgpt_core.domain.events import (
    EventChannel,
    ExchangeCompleted,
    ExchangeFailed,
    ReasoningDeltaEvent,
    TextDeltaEvent,
    ToolResultEvent,
    ToolUseEvent,
)
from exgpt_core.domain.models import Message
from exgpt_core.render.incremental import IncrementalRenderer, format_timestamp_label, tool_notice
from exgpt_core.render.markdown import LIVE_LOADING, RenderOptions, render_markdown

DOC = "<!DOCTYPE html><html><head></head><body>ok</body></html>"


def _deltas(chunks):
    full = ""
    for chunk in chunks:
        full += chunk
        yield TextDeltaEvent("c1", chunk, full)


def test_tool_notices():
    assert tool_notice("web_fetch", {"url": "https://a.example"}) == "Fetching: https://a.example"
    assert tool_notice("wolfram_alpha", {"query": "2+2"}) == "Computing: 2+2"
    assert tool_notice("unknown_tool", {"query": "news"}) == "Fetching"
    assert tool_notice("web_fetch", {}) == "Fetching"


def test_streaming_render_matches_final_render():
    chunks = ["Here is **bo", "ld** text\n```py", "thon\nprint(1)\n", "```\n| a |\n|---|\n| 1 |"]
    renderer = IncrementalRenderer(options=RenderOptions(syntax_highlight=True))
    for event in _deltas(chunks):
        renderer.on_event(event)
    last_streaming = renderer.html
    final = renderer.finalize()
    assert final == last_streaming
    assert final == render_markdown("".join(chunks), renderer.options)
    assert renderer.done


def test_live_preview_placeholder_until_completed():
    options = RenderOptions(live_html=True)
    renderer = IncrementalRenderer(options=options)
    partial = "Preview:\n```live\n<!DOCTYPE html><html>"
    renderer.on_event(TextDeltaEvent("c1", partial, partial))
    assert LIVE_LOADING in renderer.html

    full = f"Preview:\n```live\n{DOC}\n```"
    message = Message(role="assistant", content=full, created_at=datetime.now(timezone.utc))
    renderer.on_event(TextDeltaEvent("c1", full[len(partial):], full))
    renderer.on_event(ExchangeCompleted("c1", message))
    assert LIVE_LOADING not in renderer.html
    assert "<iframe" in renderer.html


def test_reasoning_tool_events_and_timestamp():
    created = datetime(2024, 1, 2, 3, 4, tzinfo=timezone.utc)
    renderer = IncrementalRenderer(show_timestamps=True)
    renderer.on_event(ReasoningDeltaEvent("c1", 0, "first <thought>"))
    renderer.on_event(ReasoningDeltaEvent("c1", 0, " continues"))
    renderer.on_event(ToolUseEvent("c1", "web_fetch", {"url": "https://a.example"}))
    renderer.on_event(ToolResultEvent("c1", "web_fetch", "Content from https://a.example"))
    renderer.on_event(ReasoningDeltaEvent("c1", 1, "second"))
    renderer.on_event(ExchangeCompleted("c1", Message(role="assistant", content="done", created_at=created)))

    assert renderer.reasoning_segments() == ["first &lt;thought&gt; continues", "second"]
    assert renderer.tool_notices == ["Fetching: https://a.example"]
    assert renderer.tool_previews == ["Content from https://a.example"]
    assert renderer.timestamp == format_timestamp_label(created)
    assert renderer.html == "<p>done</p>"


def test_failure_discards_partial_text():
    renderer = IncrementalRenderer()
    renderer.on_event(TextDeltaEvent("c1", "half an ans", "half an ans"))
    renderer.on_event(ExchangeFailed("c1", "Rate limited", "RATE_LIMIT"))
    assert renderer.html == ""
    assert renderer.text == ""
    assert renderer.error == "Rate limited"
    assert renderer.done


@pytest.mark.asyncio
async def test_consume_stops_at_terminal_event():
    channel = EventChannel()
    for event in _deltas(["Hello ", "*world*"]):
        await channel.publish(event)
    await channel.publish(ExchangeCompleted("c1", Message(role="assistant", content="Hello *world*")))
    await channel.publish(TextDeltaEvent("c1", "late", "late"))

    renderer = IncrementalRenderer()
    html = await renderer.consume(channel)
    assert html == "<p>Hello <em>world</em></p>"
    assert renderer.text == "Hello *world*"
