"""请求上下文依赖。

职责:
1. 从 Authorization 头提取访问令牌并完成认证。
2. 提供当前会话与当前用户给路由层使用。
3. 按客户端地址对敏感接口做请求限流。
"""

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from chatauth_api.core.clock import Clock, get_clock
from chatauth_api.core.security import extract_bearer_token
from chatauth_api.db.session import get_db
from chatauth_api.models.user import User
from chatauth_api.services import throttle
from chatauth_api.services.tokens import AuthenticatedSession, authenticate_access_token

bearer_scheme = HTTPBearer(auto_error=False)


def get_current_session(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> AuthenticatedSession:
    """校验访问令牌并返回认证会话，失败抛出 Unauthenticated。"""
    authorization = None
    if credentials is not None and credentials.credentials:
        authorization = f"{credentials.scheme} {credentials.credentials}"
    token = extract_bearer_token(authorization)
    return authenticate_access_token(db, token, clock=clock)


def get_current_user(session: AuthenticatedSession = Depends(get_current_session)) -> User:
    """仅做认证，返回当前用户。"""
    return session.user


def client_identity(request: Request) -> str:
    """限流使用的客户端标识。"""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        # 只信任最靠近网关的一跳。
        return forwarded.split(",")[-1].strip() or "unknown"
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"


def throttle_requests(scope: str):
    """构造按客户端地址限流的路由依赖。"""

    def _dep(request: Request, clock: Clock = Depends(get_clock)) -> None:
        throttle.hit(scope, client_identity(request), now=clock.now())

    return _dep
