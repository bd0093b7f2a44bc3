"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 service 层或 UI 层做统一捕获与用户提示。

分类：
- 配置错误（ConfigurationError）：未配置 API Key 等，直接抛出，不发网络请求。
- 端点错误（NetworkError / ApiError / RateLimitError / ToolLoopLimitError）：
  调用方收到错误前，conduct 路径会先回滚刚追加的用户消息。
- 存储错误（StoreError）：读写会话文件失败，对该次操作是致命的。
- 工具错误不在此列：ToolExecutor 总是把失败转换成文本结果。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 conversation_id、stop_reason 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ConfigurationError(BusinessError):
    """缺少必要配置（例如 API Key），在发起任何网络请求前抛出。"""


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(BusinessError):
    """端点返回非 2xx 响应，或流式响应格式不合法。"""


class RateLimitError(BusinessError):
    """端点限流（429/529）。"""


class ToolLoopLimitError(ApiError):
    """端点在允许的轮数内始终要求调用工具。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class StoreError(BusinessError):
    """会话或设置文件读写失败。"""
