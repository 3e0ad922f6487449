"""实时频道订阅授权。

频道命名只有两种形态:
1. `user.{id}`：个人通知频道，仅本人可订阅。
2. `group.{groupId}`：群聊频道，仅群成员可订阅。
其余形态一律拒绝。每次订阅都实时查询成员关系，不做跨连接缓存，
被移出群组的用户在下一次（重新）订阅时即失去授权。
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import re
from uuid import UUID

import jwt
from sqlalchemy import select
from sqlalchemy.orm import Session

from chatauth_api.core.config import get_settings
from chatauth_api.db.session import run_read_with_retry
from chatauth_api.models.enums import ChannelKind
from chatauth_api.models.group import GroupMembership

_CHANNEL_PATTERN = re.compile(r"^(?P<kind>user|group)\.(?P<target>[^.\s]+)$")
# 推送网关附加的传输层前缀，授权前去掉。
TRANSPORT_PREFIXES = ("private-", "presence-")

logger = logging.getLogger("chatauth_api.channels")


@dataclass(frozen=True)
class ChannelRef:
    """解析后的频道。"""

    kind: ChannelKind
    target_id: UUID


def parse_channel_name(channel_name: str) -> ChannelRef | None:
    """解析频道名，无法识别时返回 None。"""
    matched = _CHANNEL_PATTERN.match(channel_name)
    if matched is None:
        return None
    try:
        target_id = UUID(matched.group("target"))
    except ValueError:
        return None
    return ChannelRef(kind=ChannelKind(matched.group("kind")), target_id=target_id)


def is_group_member(db: Session, *, group_id: UUID, user_id: UUID) -> bool:
    """判断用户是否为群组成员。"""
    stmt = (
        select(GroupMembership.id)
        .where(GroupMembership.group_id == group_id)
        .where(GroupMembership.user_id == user_id)
        .limit(1)
    )
    return run_read_with_retry(db, lambda: db.execute(stmt).first()) is not None


def authorize_channel(db: Session, *, user_id: UUID, channel_name: str) -> bool:
    """判断调用者能否订阅频道，True 为放行。"""
    channel = parse_channel_name(channel_name)
    if channel is None:
        admitted = False
    elif channel.kind == ChannelKind.USER:
        admitted = channel.target_id == user_id
    else:
        admitted = is_group_member(db, group_id=channel.target_id, user_id=user_id)

    if not admitted:
        logger.info("channel subscription denied user_id=%s channel=%s", user_id, channel_name)
    return admitted


def strip_transport_prefix(channel_name: str) -> str:
    """去掉 private-/presence- 等传输层前缀。"""
    for prefix in TRANSPORT_PREFIXES:
        if channel_name.startswith(prefix):
            return channel_name[len(prefix) :]
    return channel_name


def sign_channel_grant(
    *,
    user_id: UUID,
    channel_name: str,
    now: datetime,
    socket_id: str | None = None,
) -> tuple[str, datetime]:
    """为已放行的订阅签发短期凭证，推送网关校验签名后完成订阅。"""
    settings = get_settings()
    expires_at = now + timedelta(seconds=settings.broadcast_token_ttl_seconds)
    claims: dict[str, object] = {
        "sub": str(user_id),
        "channel": channel_name,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if settings.broadcast_jwt_issuer:
        claims["iss"] = settings.broadcast_jwt_issuer
    if socket_id:
        claims["socket_id"] = socket_id

    token = jwt.encode(claims, settings.broadcast_jwt_secret, algorithm=settings.broadcast_jwt_algorithm)
    return token, expires_at
