"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。

这里只放“运行参数”（数据目录、超时、端点地址、工具轮数上限等），
用户在界面里修改的偏好（模式、开关、API Key）由
infrastructure.storage.settings_store 负责持久化。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("EXGPT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class AppSettings(BaseSettings):
    """运行配置（使用 Pydantic）。"""

    # ---- 存储与日志 ----
    data_dir: str = Field(default=".exgpt", description="会话与用户设置的存储目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否截断日志内容")

    # ---- 推理端点 ----
    api_base_url: str = Field(
        default="https://api.anthropic.com/v1",
        description="Messages API 基础URL",
    )
    anthropic_version: str = Field(default="2023-06-01", description="anthropic-version 请求头")
    http_timeout: float = Field(default=120.0, ge=1.0, description="HTTP 超时时间（秒）")
    default_model: str = Field(
        default="claude-sonnet-4-20250514",
        description="模式未指定模型时使用的模型 ID",
    )
    default_max_tokens: int = Field(default=8192, ge=1, description="模式未指定时的输出 token 上限")
    title_model: str = Field(
        default="claude-haiku-4-5-20251001",
        description="生成会话标题使用的模型",
    )

    # ---- 工具 ----
    max_tool_rounds: int = Field(
        default=20,
        ge=1,
        le=50,
        description="单轮对话内工具调用最大轮数，超过视为端点错误",
    )
    tool_output_limit: int = Field(
        default=20000,
        ge=100,
        description="单次工具输出的最大字符数",
    )
    modes_file: Optional[str] = Field(
        default=None,
        description="自定义 modes.yaml 路径，不设置则使用内置模式",
    )

    model_config = SettingsConfigDict(
        env_prefix="EXGPT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = AppSettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = AppSettings
