"""Provider 抽象接口。

上层 ExchangeEngine 不直接依赖具体的 HTTP 细节，而是依赖此协议：

- 实现者负责把 ChatRequest 转成端点请求。
- 流式调用把服务端事件解析为有序的 StreamEvent；
  非流式调用把响应 JSON 解析为 ChatResult。

测试里可以用脚本化的假 Provider 替换真实客户端。
"""

from typing import AsyncIterator, Protocol

from exgpt_core.domain.models import ChatRequest, ChatResult, StreamEvent


class ProviderClient(Protocol):
    """推理端点客户端协议。

    - name: Provider 名称，用于日志。
    - stream(req): 流式调用，按到达顺序产出 StreamEvent，以 StreamEnd 结束。
    - create(req): 一次性调用，返回完整的 ChatResult。
    """

    name: str

    def stream(self, req: ChatRequest) -> AsyncIterator[StreamEvent]:
        ...

    async def create(self, req: ChatRequest) -> ChatResult:
        ...
