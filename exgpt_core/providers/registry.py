"""推理端点配置。

集中放置端点地址、协议版本、beta 特性名等常量，
AnthropicClient 只从这里取值，便于后续升级 API 版本或切换代理地址。"""

from dataclasses import dataclass
from typing import Mapping


# 同时开启工具与扩展推理时需要的 beta 特性
INTERLEAVED_THINKING_BETA = "interleaved-thinking-2025-05-14"

# 这些状态码视为限流/过载，映射为 RateLimitError
RATE_LIMIT_STATUSES = (429, 529)

TITLE_MAX_TOKENS = 50


@dataclass
class EndpointConfig:
    """某个推理端点的连接配置。"""

    name: str
    base_url: str
    api_version: str
    messages_path: str = "/messages"

    @property
    def messages_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.messages_path}"


ANTHROPIC_CONFIG = EndpointConfig(
    name="anthropic",
    base_url="https://api.anthropic.com/v1",
    api_version="2023-06-01",
)


PROVIDER_REGISTRY: Mapping[str, EndpointConfig] = {
    "anthropic": ANTHROPIC_CONFIG,
}


def get_endpoint_config(name: str, app_settings=None) -> EndpointConfig:
    """根据名称获取 EndpointConfig，名称不区分大小写。

    传入运行配置时，用其中的 api_base_url / anthropic_version 覆盖默认值。
    """

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            if app_settings is None:
                return cfg
            return EndpointConfig(
                name=cfg.name,
                base_url=getattr(app_settings, "api_base_url", None) or cfg.base_url,
                api_version=getattr(app_settings, "anthropic_version", None) or cfg.api_version,
                messages_path=cfg.messages_path,
            )
    raise KeyError(f"Unknown provider: {name!r}")
