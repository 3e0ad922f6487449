"""统一响应结构工具。"""

from datetime import datetime, timezone
from time import perf_counter
from typing import Any

from fastapi import Request

DEFAULT_ERROR_MESSAGE = "internal server error"
DEFAULT_SUGGESTION = "请稍后重试，若持续失败请联系管理员并提供 request_id。"

_SUCCESS_MESSAGE_BY_METHOD = {
    "GET": "查询成功。",
    "POST": "操作成功。",
    "DELETE": "删除成功。",
}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _request_id(request: Request) -> str:
    # 中间件之前就失败的请求没有 request_id。
    return getattr(request.state, "request_id", "") or ""


def success(
    request: Request,
    data: Any,
    meta: dict[str, Any] | None = None,
    *,
    message: str | None = None,
) -> dict[str, Any]:
    """构造统一成功响应结构。"""
    elapsed_ms = None
    started_at = getattr(request.state, "request_started_at", None)
    if isinstance(started_at, float):
        elapsed_ms = int((perf_counter() - started_at) * 1000)

    final_meta: dict[str, Any] = {
        "message": message or _SUCCESS_MESSAGE_BY_METHOD.get(request.method.upper(), "操作成功。"),
        "method": request.method.upper(),
        "path": request.url.path,
        "timestamp": _utc_now_iso(),
        "process_ms": elapsed_ms,
    }
    if meta:
        final_meta.update(meta)
    return {
        "request_id": _request_id(request),
        "data": data,
        "meta": final_meta,
    }


def error_payload(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    suggestion: str | None = None,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """构造统一错误响应结构。

    details 固定包含 status_code、reason、suggestion 与请求定位信息，
    调用方传入的 details 覆盖在其上。
    """
    final_details: dict[str, Any] = {
        "status_code": status_code,
        "reason": code.lower(),
        "suggestion": suggestion or DEFAULT_SUGGESTION,
        "method": request.method.upper(),
        "path": request.url.path,
        "timestamp": _utc_now_iso(),
    }
    if details:
        final_details.update(details)
    return {
        "request_id": _request_id(request),
        "error": {
            "code": code,
            "message": message,
            "details": final_details,
        },
    }
