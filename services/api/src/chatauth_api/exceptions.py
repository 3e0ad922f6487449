"""应用异常处理注册。"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from chatauth_api.core.errors import AuthError, RateLimited
from chatauth_api.utils.response import DEFAULT_ERROR_MESSAGE, error_payload

logger = logging.getLogger("chatauth_api.exceptions")

_HTTP_DEFAULTS: dict[int, tuple[str, str, str]] = {
    status.HTTP_400_BAD_REQUEST: ("BAD_REQUEST", "请求参数不合法。", "请检查请求参数后重试。"),
    status.HTTP_401_UNAUTHORIZED: ("UNAUTHENTICATED", "未登录或登录状态已失效。", "请重新登录并携带有效访问令牌。"),
    status.HTTP_403_FORBIDDEN: ("UNAUTHORIZED", "无权限访问该资源。", "请确认当前账号是否具备访问权限。"),
    status.HTTP_404_NOT_FOUND: ("NOT_FOUND", "请求资源不存在。", "请确认请求路径与资源 ID 是否正确。"),
    status.HTTP_405_METHOD_NOT_ALLOWED: ("METHOD_NOT_ALLOWED", "请求方法不被允许。", "请查阅接口文档确认请求方法。"),
    status.HTTP_409_CONFLICT: ("CONFLICT", "请求与当前数据状态冲突。", "请刷新数据后重试。"),
    status.HTTP_422_UNPROCESSABLE_CONTENT: ("VALIDATION_ERROR", "请求参数校验失败。", "请根据错误字段提示修正请求参数后重试。"),
}


def _http_defaults(status_code: int) -> tuple[str, str, str]:
    return _HTTP_DEFAULTS.get(status_code, ("HTTP_ERROR", "请求处理失败。", "请稍后重试。"))


async def auth_error_handler(request: Request, exc: AuthError):
    """将认证业务错误映射为状态码与稳定错误码。"""
    headers = None
    if isinstance(exc, RateLimited) and exc.retry_after is not None:
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload(
            request,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            suggestion=exc.suggestion,
            details=exc.details,
        ),
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """将协议异常统一包装为标准错误结构。"""
    code, message, suggestion = _http_defaults(exc.status_code)
    details: dict[str, object] = {}
    if isinstance(exc.detail, dict):
        code = str(exc.detail.get("code") or code)
        message = str(exc.detail.get("message") or message)
        details.update({key: value for key, value in exc.detail.items() if key not in {"code", "message"}})
    elif isinstance(exc.detail, str) and exc.detail:
        details["detail"] = exc.detail
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload(
            request,
            status_code=exc.status_code,
            code=code,
            message=message,
            suggestion=suggestion,
            details=details,
        ),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """统一处理请求参数校验错误，不回显提交的口令等原始值。"""
    normalized_errors = [
        {
            "field": ".".join(str(item) for item in err.get("loc", []) if item != "body"),
            "message": err.get("msg"),
            "type": err.get("type"),
        }
        for err in exc.errors()
    ]
    code, message, suggestion = _http_defaults(status.HTTP_422_UNPROCESSABLE_CONTENT)
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
        content=error_payload(
            request,
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            code=code,
            message=message,
            suggestion=suggestion,
            details={"errors": normalized_errors},
        ),
    )


async def unexpected_exception_handler(request: Request, exc: Exception):
    """处理未捕获异常，避免内部细节泄露。"""
    logger.exception("unhandled exception path=%s", request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_payload(
            request,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            code="INTERNAL_ERROR",
            message=DEFAULT_ERROR_MESSAGE,
            details={"reason": "unexpected_exception"},
        ),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """集中注册异常处理器。"""
    app.exception_handler(AuthError)(auth_error_handler)
    app.exception_handler(StarletteHTTPException)(http_exception_handler)
    app.exception_handler(RequestValidationError)(validation_exception_handler)
    app.exception_handler(Exception)(unexpected_exception_handler)
