"""认证子系统的业务错误类型。

这些错误都是可预期、可恢复的结果，由统一异常处理器映射为
HTTP 状态码 + 稳定错误码，不会作为未捕获故障暴露内部细节。
"""

from typing import Any

from fastapi import status


class AuthError(Exception):
    """认证业务错误基类。"""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "AUTH_ERROR"
    message: str = "请求处理失败。"
    suggestion: str = "请稍后重试。"

    def __init__(self, message: str | None = None, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message or self.message)
        if message:
            self.message = message
        self.details = details or {}


class InvalidCredentials(AuthError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "INVALID_CREDENTIALS"
    message = "邮箱或密码错误。"
    suggestion = "请确认邮箱与密码后重试。"


class Unauthenticated(AuthError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "UNAUTHENTICATED"
    message = "未登录或登录状态已失效。"
    suggestion = "请使用刷新令牌换取新的访问令牌，或重新登录。"


class InvalidOrExpiredRefreshToken(AuthError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "INVALID_OR_EXPIRED_REFRESH_TOKEN"
    message = "刷新令牌无效或已过期。"
    suggestion = "请重新登录。"


class InvalidOrExpiredOtp(AuthError):
    status_code = status.HTTP_422_UNPROCESSABLE_CONTENT
    code = "INVALID_OR_EXPIRED_OTP"
    message = "验证码无效或已过期。"
    suggestion = "请确认验证码，或重新申请验证码。"


class RateLimited(AuthError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "RATE_LIMITED"
    message = "请求过于频繁。"
    suggestion = "请稍后再试。"

    def __init__(self, message: str | None = None, *, retry_after: int | None = None) -> None:
        details: dict[str, Any] = {}
        if retry_after is not None:
            details["retry_after"] = retry_after
        super().__init__(message, details=details)
        self.retry_after = retry_after


class AlreadyVerified(AuthError):
    status_code = status.HTTP_409_CONFLICT
    code = "ALREADY_VERIFIED"
    message = "邮箱已完成验证。"
    suggestion = "无需再次验证。"


class NotFound(AuthError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"
    message = "请求资源不存在。"
    suggestion = "请确认请求参数是否正确。"


class Unauthorized(AuthError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "UNAUTHORIZED"
    message = "无权访问该资源。"
    suggestion = "请确认当前账号是否具备访问权限。"


class ValidationFailed(AuthError):
    status_code = status.HTTP_422_UNPROCESSABLE_CONTENT
    code = "VALIDATION_FAILED"
    message = "请求参数校验失败。"
    suggestion = "请根据错误字段提示修正请求参数后重试。"

    def __init__(self, errors: dict[str, str], message: str | None = None) -> None:
        super().__init__(
            message,
            details={"errors": [{"field": field, "message": text} for field, text in errors.items()]},
        )
        self.errors = errors


__all__ = [
    "AuthError",
    "AlreadyVerified",
    "InvalidCredentials",
    "InvalidOrExpiredOtp",
    "InvalidOrExpiredRefreshToken",
    "NotFound",
    "RateLimited",
    "Unauthenticated",
    "Unauthorized",
    "ValidationFailed",
]
