"""对外 API 服务模块。

ChatService 是桌面端界面调用的全部入口（会话管理、设置、发送消息等），
返回值都是可直接序列化的字典。依赖全部显式注入，
create_default_service 负责按运行配置组装默认实现。
"""

import asyncio
from typing import Any, Dict, List, Optional

from exgpt_core.agents.exchange_engine import ExchangeEngine
from exgpt_core.capabilities.registry import (
    TOGGLES,
    Mode,
    get_toggle,
    is_toggle_available,
    load_modes,
    set_toggle,
)
from exgpt_core.config.settings import settings
from exgpt_core.domain.conversation import Conversation
from exgpt_core.domain.events import EventChannel
from exgpt_core.domain.exceptions import ValidationError
from exgpt_core.domain.models import format_timestamp
from exgpt_core.infrastructure.logging.logger import logger
from exgpt_core.infrastructure.storage.json_store import DEFAULT_TITLE, JsonConversationStore
from exgpt_core.infrastructure.storage.settings_store import JsonSettingsStore, UserSettings
from exgpt_core.providers import ClientContext
from exgpt_core.tools.executor import ToolExecutor, default_tool_defs, default_tools


def _conversation_summary(conv: Conversation) -> Dict[str, Any]:
    return {
        "id": conv.id,
        "title": conv.title,
        "created_at": format_timestamp(conv.created_at),
        "updated_at": format_timestamp(conv.updated_at),
        "message_count": len(conv.messages),
    }


class ChatService:
    def __init__(
        self,
        store: JsonConversationStore,
        settings_store: JsonSettingsStore,
        clients: ClientContext,
        engine: ExchangeEngine,
        modes: List[Mode],
    ):
        self._store = store
        self._settings_store = settings_store
        self._clients = clients
        self._engine = engine
        self._modes = modes

    @property
    def engine(self) -> ExchangeEngine:
        return self._engine

    @property
    def configured(self) -> bool:
        """是否已有可用的 API Key（界面据此提示用户去设置页填写）。"""
        return self._clients.configured

    async def start(self) -> None:
        """读取用户设置并按其中的 API Key 构造客户端。"""
        user_settings = await self._settings_store.load()
        self._clients.rebuild(user_settings.resolved_api_key())

    # ---- 会话 ----

    async def list_chats(self) -> List[Dict[str, Any]]:
        return [_conversation_summary(c) for c in await self._store.list()]

    async def create_chat(self, title: str = DEFAULT_TITLE) -> Dict[str, Any]:
        return _conversation_summary(await self._store.create(title))

    async def get_chat(self, chat_id: str) -> Dict[str, Any]:
        conv = await self._store.get(chat_id)
        if conv is None:
            raise ValidationError(code="CONVERSATION_NOT_FOUND", message=chat_id)
        return conv.to_payload()

    async def rename_chat(self, chat_id: str, title: str) -> Dict[str, Any]:
        return _conversation_summary(await self._store.rename(chat_id, title))

    async def delete_chat(self, chat_id: str) -> None:
        await self._store.delete(chat_id)
        self._engine.forget(chat_id)

    # ---- 设置 ----

    async def get_settings(self) -> Dict[str, Any]:
        """界面展示用设置（凭据打码）。"""
        return (await self._settings_store.load()).masked()

    async def save_api_key(self, api_key: str) -> Dict[str, Any]:
        updated = await self._settings_store.update(api_key=api_key.strip())
        self._clients.rebuild(updated.resolved_api_key())
        return updated.masked()

    async def save_wolfram_app_id(self, app_id: str) -> Dict[str, Any]:
        return (await self._settings_store.update(wolfram_app_id=app_id.strip())).masked()

    async def save_mode(self, mode_name: str) -> Dict[str, Any]:
        if not any(m.name == mode_name for m in self._modes):
            raise ValidationError(code="UNKNOWN_MODE", message=mode_name)
        return (await self._settings_store.update(selected_mode=mode_name)).masked()

    async def save_toggles(self, enabled: List[str]) -> Dict[str, Any]:
        """整体替换启用的开关（忽略未知名称）。"""
        names = [n for n in enabled if get_toggle(n) is not None]
        return (await self._settings_store.update(enabled_toggles=names)).masked()

    async def toggle(self, name: str, on: bool) -> Dict[str, Any]:
        """切换单个开关；关闭时级联关闭依赖它的开关。"""

        toggle = get_toggle(name)
        if toggle is None:
            raise ValidationError(code="UNKNOWN_TOGGLE", message=name)
        current = await self._settings_store.load()
        if on and not is_toggle_available(toggle, current.enabled_toggles, current.debug_features):
            raise ValidationError(
                code="TOGGLE_UNAVAILABLE",
                message=f"{name} requires {toggle.depends_on or 'debug features'}",
            )
        names = set_toggle(current.enabled_toggles, name, on)
        return (await self._settings_store.update(enabled_toggles=names)).masked()

    async def save_debug_features(self, enabled: bool) -> Dict[str, Any]:
        return (await self._settings_store.update(debug_features=enabled)).masked()

    async def save_show_thinking(self, enabled: bool) -> Dict[str, Any]:
        return (await self._settings_store.update(show_thinking_by_default=enabled)).masked()

    def get_modes(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": m.name,
                "display_name": m.display_name,
                "icon": m.icon,
                "description": m.description,
                "extended_thinking": m.wants_reasoning,
            }
            for m in self._modes
        ]

    async def get_toggles(self) -> List[Dict[str, Any]]:
        current: UserSettings = await self._settings_store.load()
        return [
            {
                "name": t.name,
                "display_name": t.display_name,
                "icon": t.icon,
                "depends_on": t.depends_on,
                "enabled": t.name in current.enabled_toggles,
                "available": is_toggle_available(t, current.enabled_toggles, current.debug_features),
            }
            for t in TOGGLES
            if current.debug_features or not t.requires_debug
        ]

    # ---- 对话 ----

    async def send_message(
        self,
        chat_id: str,
        text: str,
        channel: Optional[EventChannel] = None,
    ) -> Dict[str, Any]:
        """发送一条用户消息；会话的第一条消息会同时生成标题。

        标题生成与对话并发执行，二者分别只写自己负责的字段。
        """

        conv = await self._store.get(chat_id)
        if conv is None:
            raise ValidationError(code="CONVERSATION_NOT_FOUND", message=chat_id)
        title_task: Optional[asyncio.Task] = None
        if not conv.messages and self._clients.configured:
            title_task = asyncio.create_task(self._engine.generate_title(chat_id, text))
        try:
            message = await self._engine.conduct(chat_id, text, channel)
        except Exception as e:
            logger.error(f"Send failed: {e}", extra={"extra": {
                "conversation_id": chat_id,
                "error": str(e),
            }})
            raise
        finally:
            title = await title_task if title_task is not None else None
        return {"conversation_id": chat_id, "message": message.to_payload(), "title": title}

    async def regenerate(
        self,
        chat_id: str,
        from_index: int,
        channel: Optional[EventChannel] = None,
    ) -> Dict[str, Any]:
        message = await self._engine.regenerate(chat_id, from_index, channel)
        return {"conversation_id": chat_id, "message": message.to_payload()}

    async def edit_and_resend(
        self,
        chat_id: str,
        index: int,
        new_text: str,
        channel: Optional[EventChannel] = None,
    ) -> Dict[str, Any]:
        """编辑第 index 条用户消息并基于它重新生成回复。"""
        conv = await self._engine.edit(chat_id, index, new_text)
        return await self.regenerate(chat_id, len(conv.messages), channel)


async def create_default_service(cfg=None) -> ChatService:
    """按运行配置组装默认的 ChatService。"""

    cfg = cfg or settings
    store = JsonConversationStore(root=cfg.data_dir)
    settings_store = JsonSettingsStore(root=cfg.data_dir)
    clients = ClientContext()

    async def _wolfram_app_id() -> str:
        return (await settings_store.load()).resolved_wolfram_app_id()

    modes = load_modes(cfg.modes_file)
    engine = ExchangeEngine(
        store=store,
        clients=clients,
        settings_store=settings_store,
        modes=modes,
        tool_executor=ToolExecutor(
            default_tools(wolfram_credentials=_wolfram_app_id, timeout=cfg.http_timeout),
            output_limit=cfg.tool_output_limit,
        ),
        tool_defs=default_tool_defs(),
        cfg=cfg,
    )
    service = ChatService(store, settings_store, clients, engine, modes)
    await service.start()
    logger.info("Service started", extra={"extra": {"data_dir": cfg.data_dir, "modes": len(modes)}})
    return service
