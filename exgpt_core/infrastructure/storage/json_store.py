"""基于单个 JSON 文档的会话存储。

所有会话保存在 ``<data_dir>/chats.json`` 中（最新创建的在前）。
每次操作都重新读取整个文档，写入时先写临时文件再 ``os.replace``，
因此任何一次写入要么完整生效、要么完全不生效。

``update`` 在进程内用 asyncio.Lock 串行化“读-改-写”，
但它并不是事务：调用方（例如 Orchestrator 的提交步骤）需要在 mutator
里只修改自己负责的字段，避免覆盖并发写入的其他字段（例如标题）。
"""

import asyncio
import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from exgpt_core.config.settings import settings
from exgpt_core.domain.conversation import Conversation, ConversationMutator, ConversationStore
from exgpt_core.domain.exceptions import StoreError, ValidationError

DEFAULT_TITLE = "New Chat"
UNTITLED = "Untitled Chat"


class JsonConversationStore(ConversationStore):
    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.data_dir).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._path = self._root / "chats.json"
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def list(self) -> List[Conversation]:
        docs = await asyncio.to_thread(self._read_all)
        return [Conversation.from_payload(d) for d in docs]

    async def create(self, title: str = DEFAULT_TITLE) -> Conversation:
        now = datetime.now(timezone.utc)
        conv = Conversation(
            id=f"chat-{uuid4().hex}",
            title=title or DEFAULT_TITLE,
            created_at=now,
            updated_at=now,
        )
        async with self._lock:
            docs = await asyncio.to_thread(self._read_all)
            docs.insert(0, conv.to_payload())
            await asyncio.to_thread(self._write_all, docs)
        return conv

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        docs = await asyncio.to_thread(self._read_all)
        for doc in docs:
            if doc.get("id") == conversation_id:
                return Conversation.from_payload(doc)
        return None

    async def update(self, conversation_id: str, mutator: ConversationMutator) -> Conversation:
        """重新读取会话，交给 mutator 原地修改，再整体写回。"""
        async with self._lock:
            docs = await asyncio.to_thread(self._read_all)
            for i, doc in enumerate(docs):
                if doc.get("id") == conversation_id:
                    conv = Conversation.from_payload(doc)
                    mutator(conv)
                    docs[i] = conv.to_payload()
                    await asyncio.to_thread(self._write_all, docs)
                    return conv
        raise ValidationError(code="CONVERSATION_NOT_FOUND", message=conversation_id)

    async def rename(self, conversation_id: str, title: str) -> Conversation:
        """更新会话标题（空标题回退为 Untitled Chat）。"""

        def _apply(conv: Conversation) -> None:
            conv.title = title.strip() or UNTITLED
            conv.updated_at = datetime.now(timezone.utc)

        return await self.update(conversation_id, _apply)

    async def delete(self, conversation_id: str) -> None:
        async with self._lock:
            docs = await asyncio.to_thread(self._read_all)
            remaining = [d for d in docs if d.get("id") != conversation_id]
            if len(remaining) == len(docs):
                raise ValidationError(code="CONVERSATION_NOT_FOUND", message=conversation_id)
            await asyncio.to_thread(self._write_all, remaining)

    def _read_all(self) -> List[Dict[str, Any]]:
        if not self._path.exists():
            return []
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(code="STORE_READ_ERROR", message=str(e))
        if not isinstance(data, list):
            raise StoreError(code="STORE_READ_ERROR", message=f"{self._path} is not a list")
        return data

    def _write_all(self, docs: List[Dict[str, Any]]) -> None:
        tmp_path = self._root / f"chats.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(docs, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StoreError(code="STORE_WRITE_ERROR", message=str(e))
