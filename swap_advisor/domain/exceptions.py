"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层或 UI 层做统一捕获与用户提示。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "UPSTREAM_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 step、upstream_code 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class UpstreamError(BusinessError):
    """上游 Chat 服务返回非 0 业务码或非 2xx HTTP 状态时抛出。

    message 优先使用上游返回的 msg 字段。
    """


class NetworkError(UpstreamError):
    """网络层错误，例如连接失败、读取超时等。"""


class ChatTimeoutError(BusinessError):
    """轮询模式在最大次数内未观察到 completed 状态。"""


class MalformedPayloadError(BusinessError):
    """单行流式数据无法解析为 JSON 对象。

    只在解码器内部抛出并吸收，不会传播给调用方。
    """


class ValidationError(BusinessError):
    """参数或配置校验失败。"""
