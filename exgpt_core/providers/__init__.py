"""推理端点集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护端点配置 (registry)。
- 提供 Messages API 的具体实现 (anthropic_client)。

ClientContext 持有显式构造的客户端实例：凭据变化时重建，
由服务层按引用传给 ExchangeEngine，进程内不存在全局客户端。
"""

from typing import Callable, Optional

from exgpt_core.domain.exceptions import ConfigurationError
from exgpt_core.providers.anthropic_client import AnthropicClient
from exgpt_core.providers.base import ProviderClient


ClientFactory = Callable[[str], ProviderClient]


class ClientContext:
    def __init__(self, api_key: str = "", factory: Optional[ClientFactory] = None):
        self._factory: ClientFactory = factory or AnthropicClient
        self._client: Optional[ProviderClient] = None
        self.rebuild(api_key)

    @property
    def configured(self) -> bool:
        return self._client is not None

    def rebuild(self, api_key: str) -> None:
        """凭据变化后重建客户端；空凭据表示未配置。"""
        self._client = self._factory(api_key) if api_key else None

    def require(self) -> ProviderClient:
        if self._client is None:
            raise ConfigurationError(
                code="MISSING_API_KEY",
                message="API key not configured. Please add your Anthropic API key in Settings.",
            )
        return self._client


__all__ = ["AnthropicClient", "ClientContext", "ProviderClient"]
