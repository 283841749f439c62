"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在指令分发层做统一捕获与用户提示。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "AGENT_NOT_FOUND"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 agent、uid 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ValidationError(BusinessError):
    """参数或配置校验失败：名称非法、缺少必填参数等。"""


class NotFoundError(BusinessError):
    """智能体或历史索引不存在。"""


class BusyError(BusinessError):
    """同一目标已有进行中的生成请求。"""


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(BusinessError):
    """第三方 API 返回非 2xx/429 错误时抛出。"""


class RateLimitError(BusinessError):
    """Provider 限流错误。"""


class GenerationTimeout(BusinessError):
    """生成请求超过等待上限。"""


class PersistenceError(BusinessError):
    """注册表落盘失败，仅记录日志，不向用户暴露。"""


ProviderError = (NetworkError, ApiError, RateLimitError)
