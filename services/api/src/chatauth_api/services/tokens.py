"""访问令牌与刷新令牌的签发、轮换、吊销与认证。

令牌明文只在签发时返回一次，数据库仅保存 SHA-256 摘要。
每个 (user_id, device_name) 最多一条访问令牌与一条刷新令牌，
签发时通过 INSERT ... ON CONFLICT DO UPDATE 原子替换旧令牌。
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from chatauth_api.core.clock import Clock, SecureRandom, as_utc
from chatauth_api.core.config import get_settings
from chatauth_api.core.errors import InvalidOrExpiredRefreshToken, Unauthenticated
from chatauth_api.core.security import generate_token, hash_token
from chatauth_api.db.session import run_read_with_retry
from chatauth_api.models.auth import AccessToken, RefreshToken
from chatauth_api.models.enums import UserStatus
from chatauth_api.models.user import User

logger = logging.getLogger("chatauth_api.tokens")


@dataclass(frozen=True)
class IssuedToken:
    """新签发的令牌明文及其过期时间。"""

    plaintext: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    """一次登录或轮换得到的令牌组合。"""

    user_id: UUID
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    # 访问令牌有效期（秒）。
    expires_in: int


@dataclass
class AuthenticatedSession:
    """访问令牌认证通过后的会话信息。"""

    user: User
    device_name: str
    expires_at: datetime


def _upsert_device_token(db: Session, model: type[AccessToken] | type[RefreshToken], values: dict[str, Any]) -> None:
    """按 (user_id, device_name) 原子写入令牌，已存在则覆盖。"""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        insert_fn = postgresql.insert
    elif dialect == "sqlite":
        insert_fn = sqlite.insert
    else:
        raise RuntimeError(f"unsupported database dialect: {dialect}")

    replaced = {key: value for key, value in values.items() if key not in {"id", "user_id", "device_name"}}
    replaced["updated_at"] = func.now()
    stmt = (
        insert_fn(model.__table__)
        .values(**values)
        .on_conflict_do_update(index_elements=["user_id", "device_name"], set_=replaced)
    )
    db.execute(stmt)


def issue_access_token(
    db: Session,
    *,
    user_id: UUID,
    device_name: str,
    clock: Clock,
    rng: SecureRandom,
    ttl_seconds: int | None = None,
) -> IssuedToken:
    """签发访问令牌，同一设备名之前签发的访问令牌随即失效。"""
    settings = get_settings()
    now = clock.now()
    expires_at = now + timedelta(seconds=ttl_seconds or settings.auth_access_token_ttl_seconds)
    plaintext = generate_token(rng, settings.auth_access_token_bytes)
    _upsert_device_token(
        db,
        AccessToken,
        {
            "id": uuid4(),
            "user_id": user_id,
            "device_name": device_name,
            "token_hash": hash_token(plaintext),
            "issued_at": now,
            "expires_at": expires_at,
        },
    )
    return IssuedToken(plaintext=plaintext, expires_at=expires_at)


def issue_refresh_token(
    db: Session,
    *,
    user_id: UUID,
    device_name: str,
    clock: Clock,
    rng: SecureRandom,
    ttl_seconds: int | None = None,
) -> IssuedToken:
    """签发刷新令牌，覆盖同一设备名的旧刷新令牌。"""
    settings = get_settings()
    expires_at = clock.now() + timedelta(seconds=ttl_seconds or settings.auth_refresh_token_ttl_seconds)
    plaintext = generate_token(rng, settings.auth_refresh_token_bytes)
    _upsert_device_token(
        db,
        RefreshToken,
        {
            "id": uuid4(),
            "user_id": user_id,
            "device_name": device_name,
            "token_hash": hash_token(plaintext),
            "expires_at": expires_at,
        },
    )
    return IssuedToken(plaintext=plaintext, expires_at=expires_at)


def issue_token_pair(
    db: Session,
    *,
    user_id: UUID,
    device_name: str,
    clock: Clock,
    rng: SecureRandom,
) -> TokenPair:
    """为设备签发访问令牌与刷新令牌。"""
    settings = get_settings()
    access = issue_access_token(db, user_id=user_id, device_name=device_name, clock=clock, rng=rng)
    refresh = issue_refresh_token(db, user_id=user_id, device_name=device_name, clock=clock, rng=rng)
    return TokenPair(
        user_id=user_id,
        access_token=access.plaintext,
        access_expires_at=access.expires_at,
        refresh_token=refresh.plaintext,
        refresh_expires_at=refresh.expires_at,
        expires_in=settings.auth_access_token_ttl_seconds,
    )


def _find_refresh_token(db: Session, token_hash: str):
    return db.execute(
        select(
            RefreshToken.id,
            RefreshToken.user_id,
            RefreshToken.device_name,
            RefreshToken.expires_at,
            User.status.label("user_status"),
        )
        .join(User, User.id == RefreshToken.user_id)
        .where(RefreshToken.token_hash == token_hash)
    ).first()


def rotate_refresh_token(
    db: Session,
    *,
    refresh_token: str,
    device_name: str,
    clock: Clock,
    rng: SecureRandom,
) -> TokenPair:
    """用刷新令牌换取新的令牌组合，旧刷新令牌立即永久失效。

    替换通过带旧摘要条件的 UPDATE 完成：并发提交同一刷新令牌时，
    只有第一个命中行的请求成功，其余请求得到 InvalidOrExpiredRefreshToken。
    """
    settings = get_settings()
    now = clock.now()
    presented_hash = hash_token(refresh_token)

    row = _find_refresh_token(db, presented_hash)
    if row is None:
        logger.info("refresh token not found device=%s", device_name)
        raise InvalidOrExpiredRefreshToken()
    if row.user_status != UserStatus.ACTIVE:
        logger.warning("refresh token rejected for inactive user user_id=%s", row.user_id)
        raise InvalidOrExpiredRefreshToken()
    if row.device_name != device_name:
        logger.warning("refresh token device mismatch user_id=%s device=%s", row.user_id, device_name)
        raise InvalidOrExpiredRefreshToken()
    if as_utc(row.expires_at) <= now:
        logger.info("refresh token expired user_id=%s device=%s", row.user_id, device_name)
        raise InvalidOrExpiredRefreshToken()

    new_plaintext = generate_token(rng, settings.auth_refresh_token_bytes)
    new_expires_at = now + timedelta(seconds=settings.auth_refresh_token_ttl_seconds)
    result = db.execute(
        update(RefreshToken)
        .where(RefreshToken.id == row.id)
        .where(RefreshToken.token_hash == presented_hash)
        .where(RefreshToken.expires_at > now)
        .values(token_hash=hash_token(new_plaintext), expires_at=new_expires_at)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning("refresh token replay rejected user_id=%s device=%s", row.user_id, device_name)
        raise InvalidOrExpiredRefreshToken()

    access = issue_access_token(db, user_id=row.user_id, device_name=device_name, clock=clock, rng=rng)
    return TokenPair(
        user_id=row.user_id,
        access_token=access.plaintext,
        access_expires_at=access.expires_at,
        refresh_token=new_plaintext,
        refresh_expires_at=new_expires_at,
        expires_in=settings.auth_access_token_ttl_seconds,
    )


def revoke_device_tokens(db: Session, *, user_id: UUID, device_name: str) -> int:
    """吊销用户某个设备的访问令牌与刷新令牌，返回删除条数。"""
    revoked = 0
    for model in (AccessToken, RefreshToken):
        result = db.execute(
            delete(model)
            .where(model.user_id == user_id)
            .where(model.device_name == device_name)
            .execution_options(synchronize_session=False)
        )
        revoked += result.rowcount
    logger.info("revoked device tokens user_id=%s device=%s count=%s", user_id, device_name, revoked)
    return revoked


def revoke_all_tokens(db: Session, *, user_id: UUID) -> int:
    """吊销用户全部设备的令牌。"""
    revoked = 0
    for model in (AccessToken, RefreshToken):
        result = db.execute(
            delete(model).where(model.user_id == user_id).execution_options(synchronize_session=False)
        )
        revoked += result.rowcount
    logger.info("revoked all tokens user_id=%s count=%s", user_id, revoked)
    return revoked


def authenticate_access_token(db: Session, token: str, *, clock: Clock) -> AuthenticatedSession:
    """按令牌摘要查找访问令牌并校验有效期。"""
    token_hash = hash_token(token)

    def _lookup():
        return db.execute(
            select(AccessToken, User)
            .join(User, User.id == AccessToken.user_id)
            .where(AccessToken.token_hash == token_hash)
            .execution_options(populate_existing=True)
        ).first()

    row = run_read_with_retry(db, _lookup)
    if row is None:
        raise Unauthenticated()

    access, user = row
    expires_at = as_utc(access.expires_at)
    if expires_at <= clock.now():
        raise Unauthenticated("访问令牌已过期。")
    if user.status != UserStatus.ACTIVE:
        raise Unauthenticated()
    return AuthenticatedSession(user=user, device_name=access.device_name, expires_at=expires_at)
