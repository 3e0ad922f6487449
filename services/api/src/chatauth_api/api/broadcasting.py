"""实时频道订阅授权接口，由推送网关在完成订阅前调用。"""

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from chatauth_api.core.clock import Clock, get_clock
from chatauth_api.core.errors import Unauthorized
from chatauth_api.db.session import get_db
from chatauth_api.dependencies import get_current_session
from chatauth_api.schemas.broadcasting import BroadcastAuthData, BroadcastAuthRequest
from chatauth_api.schemas.common import ErrorResponse, SuccessResponse
from chatauth_api.services.channels import authorize_channel, sign_channel_grant, strip_transport_prefix
from chatauth_api.services.tokens import AuthenticatedSession
from chatauth_api.utils.response import success

router = APIRouter(prefix="/broadcasting", tags=["broadcasting"])


@router.post(
    "/auth",
    summary="频道订阅授权",
    description=(
        "校验当前用户能否订阅频道：`user.{id}` 仅本人可订阅，`group.{groupId}` 仅群成员可订阅。"
        "放行时返回网关可校验的短期签名凭证，拒绝时返回 403。"
    ),
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[BroadcastAuthData],
    responses={401: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
def broadcasting_auth(
    payload: BroadcastAuthRequest,
    request: Request,
    session: AuthenticatedSession = Depends(get_current_session),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """频道订阅授权。"""
    channel_name = strip_transport_prefix(payload.channel_name)
    if not authorize_channel(db, user_id=session.user.id, channel_name=channel_name):
        raise Unauthorized("无权订阅该频道。")

    token, expires_at = sign_channel_grant(
        user_id=session.user.id,
        channel_name=channel_name,
        now=clock.now(),
        socket_id=payload.socket_id,
    )
    return success(request, {"channel": channel_name, "token": token, "expires_at": expires_at})
