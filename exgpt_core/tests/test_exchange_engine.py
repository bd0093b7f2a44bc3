import asyncio

import pytest

from exgpt_core.agents.exchange_engine import ExchangeEngine
from exgpt_core.capabilities.registry import load_modes
from exgpt_core.domain.events import (
    EventChannel,
    ExchangeCompleted,
    ExchangeFailed,
    ReasoningDeltaEvent,
    TextDeltaEvent,
    ToolResultEvent,
    ToolUseEvent,
)
from exgpt_core.domain.exceptions import (
    ApiError,
    ConfigurationError,
    RateLimitError,
    ToolLoopLimitError,
    ValidationError,
)
from exgpt_core.domain.models import (
    BlockComplete,
    ChatResult,
    Message,
    ReasoningDelta,
    StreamEnd,
    TextDelta,
    ToolInvocation,
)
from exgpt_core.infrastructure.storage.json_store import UNTITLED, JsonConversationStore
from exgpt_core.infrastructure.storage.settings_store import JsonSettingsStore
from exgpt_core.providers import ClientContext
from exgpt_core.tools.executor import ToolExecutor, default_tool_defs


class SettingsStub:
    default_model = "fallback-model"
    default_max_tokens = 1000
    title_model = "title-model"
    max_tool_rounds = 20


class FakeProvider:
    """按脚本逐轮返回事件；脚本中的异常实例会在该位置抛出。"""

    name = "fake"

    def __init__(self, rounds=None, title="Weather Chat", title_error=None):
        self.rounds = list(rounds or [])
        self.requests = []
        self.create_requests = []
        self.title = title
        self.title_error = title_error

    def _next_round(self):
        if len(self.rounds) == 1:
            return self.rounds[0]
        return self.rounds.pop(0)

    async def stream(self, req):
        self.requests.append(req)
        for item in self._next_round():
            if isinstance(item, Exception):
                raise item
            yield item

    async def create(self, req):
        self.create_requests.append(req)
        if req.model == SettingsStub.title_model:
            if self.title_error:
                raise self.title_error
            return ChatResult(model=req.model, content=[{"type": "text", "text": self.title}])
        self.requests.append(req)
        content = [
            e.payload for e in self._next_round() if isinstance(e, BlockComplete)
        ]
        return ChatResult(model=req.model, content=content, stop_reason="end_turn")


def _text_round(text, stop="end_turn"):
    return [
        TextDelta(text=text),
        BlockComplete(kind="text", payload={"type": "text", "text": text}),
        StreamEnd(stop_reason=stop),
    ]


def _tool_block(call_id, name, args):
    return BlockComplete(
        kind="tool_use",
        payload={"type": "tool_use", "id": call_id, "name": name, "input": args},
    )


class Harness:
    def __init__(self, tmp_path, provider, api_key="sk-test", tools=None, cfg=None):
        self.store = JsonConversationStore(root=tmp_path / "chats")
        self.settings_store = JsonSettingsStore(root=tmp_path / "settings")
        self.provider = provider
        self.clients = ClientContext(api_key, factory=lambda key: provider)
        self.engine = ExchangeEngine(
            self.store,
            self.clients,
            self.settings_store,
            load_modes(),
            tool_executor=ToolExecutor(tools or {}),
            tool_defs=default_tool_defs(),
            cfg=cfg or SettingsStub(),
        )

    async def seed(self, *pairs):
        conv = await self.store.create()
        messages = [Message(role=role, content=content) for role, content in pairs]

        def _apply(stored):
            stored.messages = list(messages)

        await self.store.update(conv.id, _apply)
        return conv.id

    async def messages(self, conversation_id):
        return [(m.role, m.content) for m in (await self.store.get(conversation_id)).messages]


def _terminal(channel):
    return [e for e in channel.history if isinstance(e, (ExchangeCompleted, ExchangeFailed))]


@pytest.mark.asyncio
async def test_conduct_commits_user_and_assistant(tmp_path):
    h = Harness(tmp_path, FakeProvider([_text_round("Hello there")]))
    await h.settings_store.update(enabled_toggles=["streaming", "markdown"])
    conv_id = await h.seed()
    channel = EventChannel()

    message = await h.engine.conduct(conv_id, "hi", channel)

    assert message.content == "Hello there"
    assert message.reasoning is None
    assert message.tool_invocations is None
    assert await h.messages(conv_id) == [("user", "hi"), ("assistant", "Hello there")]
    assert isinstance(channel.history[0], TextDeltaEvent)
    assert channel.history[0].full_text == "Hello there"
    (done,) = _terminal(channel)
    assert isinstance(done, ExchangeCompleted) and done.streamed
    assert channel.history[-1] is done
    assert h.provider.requests[0].messages == [{"role": "user", "content": "hi"}]


@pytest.mark.asyncio
async def test_tool_loop_runs_each_tool_once_and_commits_one_message(tmp_path):
    executed = []

    async def web_fetch(args):
        executed.append(("web_fetch", args))
        return "page text"

    async def wolfram_alpha(args):
        executed.append(("wolfram_alpha", args))
        return "42"

    first = [
        ReasoningDelta(text="need data"),
        BlockComplete(kind="thinking", payload={"type": "thinking", "thinking": "need data", "signature": "sig-1"}),
        TextDelta(text="Checking."),
        BlockComplete(kind="text", payload={"type": "text", "text": "Checking."}),
        _tool_block("tu-1", "web_fetch", {"url": "https://a.example"}),
        _tool_block("tu-2", "wolfram_alpha", {"query": "6*7"}),
        StreamEnd(stop_reason="tool_use"),
    ]
    second = [
        ReasoningDelta(text="got it"),
        BlockComplete(kind="thinking", payload={"type": "thinking", "thinking": "got it", "signature": "sig-2"}),
    ] + _text_round("Answer: 42")
    h = Harness(
        tmp_path,
        FakeProvider([first, second]),
        tools={"web_fetch": web_fetch, "wolfram_alpha": wolfram_alpha},
    )
    await h.settings_store.update(
        selected_mode="deep-thinking",
        enabled_toggles=["streaming", "webfetch", "wolfram"],
    )
    conv_id = await h.seed()
    channel = EventChannel()

    message = await h.engine.conduct(conv_id, "what is 6*7?", channel)

    assert executed == [("web_fetch", {"url": "https://a.example"}), ("wolfram_alpha", {"query": "6*7"})]
    assert message.content == "Checking.\n\nAnswer: 42"
    assert message.reasoning == ("need data", "got it")
    assert message.tool_invocations == (
        ToolInvocation(name="web_fetch", input={"url": "https://a.example"}),
        ToolInvocation(name="wolfram_alpha", input={"query": "6*7"}),
    )
    stored = (await h.store.get(conv_id)).messages
    assert [m.role for m in stored] == ["user", "assistant"]
    assert stored[1].tool_invocations == message.tool_invocations

    first_req, second_req = h.provider.requests
    assert first_req.interleaved and first_req.thinking_budget == 10000
    assert [t.name for t in first_req.tools] == ["web_fetch", "wolfram_alpha"]
    assistant_turn, tool_turn = second_req.messages[1:]
    assert assistant_turn["role"] == "assistant"
    assert [b["type"] for b in assistant_turn["content"]] == ["thinking", "text", "tool_use", "tool_use"]
    assert assistant_turn["content"][0]["signature"] == "sig-1"
    assert tool_turn == {
        "role": "user",
        "content": [
            {"type": "tool_result", "tool_use_id": "tu-1", "content": "page text"},
            {"type": "tool_result", "tool_use_id": "tu-2", "content": "42"},
        ],
    }

    kinds = [type(e).__name__ for e in channel.history]
    assert kinds == [
        "ReasoningDeltaEvent",
        "TextDeltaEvent",
        "ToolUseEvent",
        "ToolUseEvent",
        "ToolResultEvent",
        "ToolResultEvent",
        "ReasoningDeltaEvent",
        "TextDeltaEvent",
        "ExchangeCompleted",
    ]
    reasoning = [e for e in channel.history if isinstance(e, ReasoningDeltaEvent)]
    assert [e.index for e in reasoning] == [0, 1]
    uses = [e for e in channel.history if isinstance(e, ToolUseEvent)]
    results = [e for e in channel.history if isinstance(e, ToolResultEvent)]
    assert [e.name for e in uses] == ["web_fetch", "wolfram_alpha"]
    assert [e.preview for e in results] == ["page text", "42"]


@pytest.mark.asyncio
async def test_tool_rounds_chain_in_order_until_final_text(tmp_path):
    fetched = []

    async def web_fetch(args):
        fetched.append(args["url"])
        return f"body of {args['url']}"

    first = [
        TextDelta(text="Looking."),
        BlockComplete(kind="text", payload={"type": "text", "text": "Looking."}),
        _tool_block("tu-1", "web_fetch", {"url": "https://1"}),
        StreamEnd(stop_reason="tool_use"),
    ]
    second = [
        _tool_block("tu-2", "web_fetch", {"url": "https://2"}),
        StreamEnd(stop_reason="tool_use"),
    ]
    h = Harness(tmp_path, FakeProvider([first, second, _text_round("Both pages agree.")]), tools={"web_fetch": web_fetch})
    await h.settings_store.update(enabled_toggles=["streaming", "webfetch"])
    conv_id = await h.seed()
    channel = EventChannel()

    message = await h.engine.conduct(conv_id, "compare them", channel)

    assert fetched == ["https://1", "https://2"]
    assert len(h.provider.requests) == 3
    assert message.content == "Looking.\n\nBoth pages agree."
    assert message.tool_invocations == (
        ToolInvocation(name="web_fetch", input={"url": "https://1"}),
        ToolInvocation(name="web_fetch", input={"url": "https://2"}),
    )
    stored = (await h.store.get(conv_id)).messages
    assert [(m.role, m.content) for m in stored] == [("user", "compare them"), ("assistant", message.content)]
    assert stored[1].tool_invocations == message.tool_invocations

    third_req = h.provider.requests[2]
    tool_results = [turn["content"][0] for turn in third_req.messages[1:] if turn["role"] == "user"]
    assert [r["tool_use_id"] for r in tool_results] == ["tu-1", "tu-2"]
    assert [r["content"] for r in tool_results] == ["body of https://1", "body of https://2"]

    deltas = [e for e in channel.history if isinstance(e, TextDeltaEvent)]
    assert deltas[-1].full_text == message.content
    assert [type(e).__name__ for e in _terminal(channel)] == ["ExchangeCompleted"]


@pytest.mark.asyncio
async def test_text_after_silent_tool_round_has_no_leading_break(tmp_path):
    async def wolfram_alpha(args):
        return "4"

    first = [_tool_block("tu-1", "wolfram_alpha", {"query": "2+2"}), StreamEnd(stop_reason="tool_use")]
    h = Harness(tmp_path, FakeProvider([first, _text_round("It is 4.")]), tools={"wolfram_alpha": wolfram_alpha})
    await h.settings_store.update(enabled_toggles=["streaming", "wolfram"])
    conv_id = await h.seed()

    message = await h.engine.conduct(conv_id, "2+2?")

    assert message.content == "It is 4."


@pytest.mark.asyncio
async def test_forget_releases_idle_lock_only(tmp_path):
    h = Harness(tmp_path, FakeProvider([_text_round("ok")]))
    conv_id = await h.seed()
    await h.engine.conduct(conv_id, "hi")
    assert conv_id in h.engine._locks

    h.engine.forget(conv_id)
    assert conv_id not in h.engine._locks

    held = h.engine._lock_for(conv_id)
    async with held:
        h.engine.forget(conv_id)
        assert h.engine._locks[conv_id] is held


@pytest.mark.asyncio
async def test_conduct_failure_discards_partial_text_and_user_message(tmp_path):
    failing = [
        TextDelta(text="partial answ"),
        ApiError(code="API_ERROR", message="upstream exploded", http_status=500),
    ]
    h = Harness(tmp_path, FakeProvider([failing]))
    await h.settings_store.update(enabled_toggles=["streaming"])
    conv_id = await h.seed(("user", "earlier"), ("assistant", "reply"))
    channel = EventChannel()

    with pytest.raises(ApiError):
        await h.engine.conduct(conv_id, "new question", channel)

    assert await h.messages(conv_id) == [("user", "earlier"), ("assistant", "reply")]
    (failed,) = _terminal(channel)
    assert isinstance(failed, ExchangeFailed)
    assert failed.error == "upstream exploded"
    assert failed.code == "API_ERROR"
    assert channel.history[-1] is failed


@pytest.mark.asyncio
async def test_stream_without_stop_event_is_an_error(tmp_path):
    h = Harness(tmp_path, FakeProvider([[TextDelta(text="cut off")]]))
    await h.settings_store.update(enabled_toggles=["streaming"])
    conv_id = await h.seed()

    with pytest.raises(ApiError) as exc:
        await h.engine.conduct(conv_id, "hi")
    assert exc.value.code == "MALFORMED_STREAM"
    assert await h.messages(conv_id) == []


@pytest.mark.asyncio
async def test_missing_api_key_fails_before_any_request(tmp_path):
    provider = FakeProvider([_text_round("never")])
    h = Harness(tmp_path, provider, api_key="")
    conv_id = await h.seed()
    channel = EventChannel()

    with pytest.raises(ConfigurationError):
        await h.engine.conduct(conv_id, "hi", channel)

    assert provider.requests == []
    assert await h.messages(conv_id) == []
    (failed,) = _terminal(channel)
    assert failed.code == "MISSING_API_KEY"


@pytest.mark.asyncio
async def test_tool_loop_stops_at_round_limit(tmp_path):
    calls = []

    async def web_fetch(args):
        calls.append(args)
        return "again"

    looping = [_tool_block("tu", "web_fetch", {"url": "https://a.example"}), StreamEnd(stop_reason="tool_use")]
    cfg = SettingsStub()
    cfg.max_tool_rounds = 2
    h = Harness(tmp_path, FakeProvider([looping]), tools={"web_fetch": web_fetch}, cfg=cfg)
    await h.settings_store.update(enabled_toggles=["streaming", "webfetch"])
    conv_id = await h.seed()

    with pytest.raises(ToolLoopLimitError) as exc:
        await h.engine.conduct(conv_id, "loop forever")

    assert exc.value.code == "TOOL_LOOP_LIMIT"
    assert len(calls) == 2
    assert len(h.provider.requests) == 3
    assert await h.messages(conv_id) == []


@pytest.mark.asyncio
async def test_non_streaming_mode_uses_single_response(tmp_path):
    h = Harness(tmp_path, FakeProvider([_text_round("all at once")]))
    await h.settings_store.update(enabled_toggles=["markdown"])
    conv_id = await h.seed()
    channel = EventChannel()

    message = await h.engine.conduct(conv_id, "hi", channel)

    assert message.content == "all at once"
    assert len(h.provider.create_requests) == 1
    (done,) = _terminal(channel)
    assert not done.streamed


@pytest.mark.asyncio
async def test_regenerate_replaces_tail(tmp_path):
    h = Harness(tmp_path, FakeProvider([_text_round("second try")]))
    await h.settings_store.update(enabled_toggles=["streaming"])
    conv_id = await h.seed(("user", "q1"), ("assistant", "a1"), ("user", "q2"), ("assistant", "a2"))

    await h.engine.regenerate(conv_id, 3)

    assert await h.messages(conv_id) == [
        ("user", "q1"),
        ("assistant", "a1"),
        ("user", "q2"),
        ("assistant", "second try"),
    ]
    assert h.provider.requests[0].messages[-1] == {"role": "user", "content": "q2"}


@pytest.mark.asyncio
async def test_regenerate_rejects_bad_index(tmp_path):
    h = Harness(tmp_path, FakeProvider([_text_round("x")]))
    conv_id = await h.seed(("user", "q1"), ("assistant", "a1"))
    for index in (0, 2, 3):
        channel = EventChannel()
        with pytest.raises(ValidationError) as exc:
            await h.engine.regenerate(conv_id, index, channel)
        assert exc.value.code == "INVALID_INDEX"
        assert isinstance(channel.history[-1], ExchangeFailed)
    assert h.provider.requests == []


@pytest.mark.asyncio
async def test_regenerate_failure_keeps_history(tmp_path):
    h = Harness(tmp_path, FakeProvider([[RateLimitError(code="RATE_LIMIT", message="slow", http_status=429)]]))
    await h.settings_store.update(enabled_toggles=["streaming"])
    conv_id = await h.seed(("user", "q1"), ("assistant", "a1"))

    with pytest.raises(RateLimitError):
        await h.engine.regenerate(conv_id, 1)

    assert await h.messages(conv_id) == [("user", "q1"), ("assistant", "a1")]


@pytest.mark.asyncio
async def test_edit_truncates_and_replaces_user_message(tmp_path):
    h = Harness(tmp_path, FakeProvider([_text_round("x")]))
    conv_id = await h.seed(("user", "q1"), ("assistant", "a1"), ("user", "q2"), ("assistant", "a2"))

    updated = await h.engine.edit(conv_id, 2, "q2 edited")

    assert [m.content for m in updated.messages] == ["q1", "a1", "q2 edited"]
    assert await h.messages(conv_id) == [("user", "q1"), ("assistant", "a1"), ("user", "q2 edited")]
    with pytest.raises(ValidationError):
        await h.engine.edit(conv_id, 1, "not a user message")
    assert h.provider.requests == []


@pytest.mark.asyncio
async def test_title_generation_strips_quotes(tmp_path):
    provider = FakeProvider(title='"Weather Chat"')
    h = Harness(tmp_path, provider)
    conv_id = await h.seed()

    assert await h.engine.generate_title(conv_id, "what's the weather?") == "Weather Chat"
    assert (await h.store.get(conv_id)).title == "Weather Chat"
    req = provider.create_requests[0]
    assert req.max_tokens == 50
    assert req.messages == [{"role": "user", "content": "what's the weather?"}]


@pytest.mark.asyncio
async def test_title_generation_failure_falls_back(tmp_path):
    h = Harness(tmp_path, FakeProvider(title_error=ApiError(code="API_ERROR", message="nope")))
    conv_id = await h.seed()

    assert await h.engine.generate_title(conv_id, "hi") == UNTITLED
    assert (await h.store.get(conv_id)).title == UNTITLED


@pytest.mark.asyncio
async def test_concurrent_title_and_exchange_keep_both_writes(tmp_path):
    h = Harness(tmp_path, FakeProvider([_text_round("Sunny")], title="Weather Chat"))
    await h.settings_store.update(enabled_toggles=["streaming"])
    conv_id = await h.seed()

    message, title = await asyncio.gather(
        h.engine.conduct(conv_id, "weather?"),
        h.engine.generate_title(conv_id, "weather?"),
    )

    stored = await h.store.get(conv_id)
    assert stored.title == title == "Weather Chat"
    assert [m.content for m in stored.messages] == ["weather?", message.content]


@pytest.mark.asyncio
async def test_exchanges_on_one_conversation_are_serialized(tmp_path):
    h = Harness(tmp_path, FakeProvider([_text_round("ok")]))
    await h.settings_store.update(enabled_toggles=["streaming"])
    conv_id = await h.seed()

    await asyncio.gather(h.engine.conduct(conv_id, "one"), h.engine.conduct(conv_id, "two"))

    assert [m for m, _ in await h.messages(conv_id)] == ["user", "assistant", "user", "assistant"]
