import asyncio
import tempfile
from pathlib import Path

import pytest

from exgpt_core.domain.exceptions import StoreError, ValidationError
from exgpt_core.domain.models import Message
from exgpt_core.infrastructure.storage.json_store import DEFAULT_TITLE, UNTITLED, JsonConversationStore


@pytest.mark.asyncio
async def test_json_store_create_list_get():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".exgpt")
        first = await store.create()
        second = await store.create("Second")
        assert first.title == DEFAULT_TITLE
        assert first.id.startswith("chat-")
        # 最新创建的在前
        assert [c.id for c in await store.list()] == [second.id, first.id]
        loaded = await store.get(second.id)
        assert loaded is not None
        assert loaded.title == "Second"
        assert await store.get("chat-missing") is None


@pytest.mark.asyncio
async def test_json_store_update_rereads_document():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d))
        conv = await store.create()
        # 另一个写入者（例如标题生成）先更新了标题
        await store.rename(conv.id, "Renamed")

        def _apply(stored):
            stored.messages = [Message(role="user", content="hi")]

        updated = await store.update(conv.id, _apply)
        assert updated.title == "Renamed"
        assert [m.content for m in (await store.get(conv.id)).messages] == ["hi"]


@pytest.mark.asyncio
async def test_json_store_rename_blank_title():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d))
        conv = await store.create()
        renamed = await store.rename(conv.id, "   ")
        assert renamed.title == UNTITLED


@pytest.mark.asyncio
async def test_json_store_delete_conversation():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d))
        conv = await store.create("temp")
        await store.delete(conv.id)
        assert conv.id not in {c.id for c in await store.list()}
        with pytest.raises(ValidationError) as exc:
            await store.delete(conv.id)
        assert exc.value.code == "CONVERSATION_NOT_FOUND"


@pytest.mark.asyncio
async def test_json_store_update_unknown_conversation():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d))
        with pytest.raises(ValidationError):
            await store.update("chat-nope", lambda c: None)


@pytest.mark.asyncio
async def test_json_store_writes_leave_no_temp_files():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d)
        store = JsonConversationStore(root=root)
        await asyncio.gather(*(store.create(f"c{i}") for i in range(5)))
        assert len(await store.list()) == 5
        assert [p.name for p in root.iterdir()] == ["chats.json"]


@pytest.mark.asyncio
async def test_json_store_corrupt_file_raises_store_error():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d)
        (root / "chats.json").write_text("{not json", encoding="utf-8")
        store = JsonConversationStore(root=root)
        with pytest.raises(StoreError) as exc:
            await store.list()
        assert exc.value.code == "STORE_READ_ERROR"
