"""用户设置存储（settings.json）。

保存界面上可修改的偏好：API Key、所选模式、启用的开关等。
凭据以 ``$NAME`` 形式保存时表示引用环境变量，读取时再解析，
界面展示时原样显示引用、字面量则打码。
"""

import asyncio
import json
import os
from pathlib import Path
from typing import Any, Dict, List
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from exgpt_core.config.env_utils import mask_secret, resolve_secret
from exgpt_core.config.settings import settings
from exgpt_core.domain.exceptions import StoreError


class UserSettings(BaseModel):
    api_key: str = ""
    wolfram_app_id: str = ""
    selected_mode: str = "quick-chat"
    enabled_toggles: List[str] = Field(default_factory=lambda: ["markdown"])
    debug_features: bool = False
    show_thinking_by_default: bool = False

    def resolved_api_key(self) -> str:
        return resolve_secret(self.api_key)

    def resolved_wolfram_app_id(self) -> str:
        return resolve_secret(self.wolfram_app_id)

    def masked(self) -> Dict[str, Any]:
        """界面展示用的副本：凭据打码（环境变量引用保持原样）。"""
        data = self.model_dump()
        data["api_key"] = mask_secret(self.api_key)
        data["wolfram_app_id"] = mask_secret(self.wolfram_app_id)
        return data


class JsonSettingsStore:
    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.data_dir).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._path = self._root / "settings.json"
        self._lock = asyncio.Lock()

    async def load(self) -> UserSettings:
        return await asyncio.to_thread(self._read)

    async def save(self, user_settings: UserSettings) -> None:
        async with self._lock:
            await asyncio.to_thread(self._write, user_settings)

    async def update(self, **changes: Any) -> UserSettings:
        """读取-修改-写回指定字段。"""
        async with self._lock:
            current = await asyncio.to_thread(self._read)
            updated = current.model_copy(update=changes)
            await asyncio.to_thread(self._write, updated)
            return updated

    def _read(self) -> UserSettings:
        if not self._path.exists():
            return UserSettings()
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            return UserSettings.model_validate(data)
        except (OSError, json.JSONDecodeError, PydanticValidationError) as e:
            raise StoreError(code="STORE_READ_ERROR", message=str(e))

    def _write(self, user_settings: UserSettings) -> None:
        tmp_path = self._root / f"settings.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(
                json.dumps(user_settings.model_dump(), ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
            os.replace(tmp_path, self._path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StoreError(code="STORE_WRITE_ERROR", message=str(e))
