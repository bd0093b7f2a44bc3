import json

import pytest

from exgpt_core.config.env_utils import MASK, resolve_secret
from exgpt_core.infrastructure.storage.settings_store import JsonSettingsStore, UserSettings


@pytest.mark.asyncio
async def test_settings_defaults_when_file_missing(tmp_path):
    store = JsonSettingsStore(root=tmp_path)
    loaded = await store.load()
    assert loaded.selected_mode == "quick-chat"
    assert loaded.enabled_toggles == ["markdown"]
    assert loaded.api_key == ""
    assert loaded.debug_features is False


@pytest.mark.asyncio
async def test_settings_update_persists_fields(tmp_path):
    store = JsonSettingsStore(root=tmp_path)
    await store.update(selected_mode="writer", enabled_toggles=["markdown", "livehtml"])
    data = json.loads((tmp_path / "settings.json").read_text(encoding="utf-8"))
    assert data["selected_mode"] == "writer"
    reloaded = await JsonSettingsStore(root=tmp_path).load()
    assert reloaded.enabled_toggles == ["markdown", "livehtml"]


def test_env_reference_resolution(monkeypatch, tmp_path):
    monkeypatch.setenv("EXGPT_TEST_KEY", "sk-from-env")
    user_settings = UserSettings(api_key="$EXGPT_TEST_KEY", wolfram_app_id="literal-id")
    assert user_settings.resolved_api_key() == "sk-from-env"
    assert user_settings.resolved_wolfram_app_id() == "literal-id"
    monkeypatch.delenv("EXGPT_TEST_KEY")
    assert resolve_secret("$EXGPT_TEST_KEY", env_file=tmp_path / "missing.env") == ""


def test_env_reference_falls_back_to_env_file(monkeypatch, tmp_path):
    monkeypatch.delenv("EXGPT_FILE_KEY", raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text('# comment\nEXGPT_FILE_KEY="sk-file"\n', encoding="utf-8")
    assert resolve_secret("$EXGPT_FILE_KEY", env_file=env_file) == "sk-file"


def test_masked_settings_hide_literal_secrets():
    masked = UserSettings(api_key="sk-secret", wolfram_app_id="$WOLFRAM_APP_ID").masked()
    assert masked["api_key"] == MASK
    assert masked["wolfram_app_id"] == "$WOLFRAM_APP_ID"
    assert UserSettings().masked()["api_key"] == ""
