"""认证接口的业务编排：注册、邮箱验证、登录、找回密码。

每个流程只负责把凭据存储、验证码、令牌几个组件按顺序串起来，
事务提交由调用方（路由层）完成，任一步失败都不会留下部分写入。
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from uuid import UUID, uuid4

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chatauth_api.core.clock import Clock, SecureRandom, as_utc
from chatauth_api.core.config import get_settings
from chatauth_api.core.errors import (
    AlreadyVerified,
    InvalidCredentials,
    InvalidOrExpiredOtp,
    NotFound,
    ValidationFailed,
)
from chatauth_api.core.security import redact_email
from chatauth_api.models.enums import OtpOwnerType, OtpPurpose
from chatauth_api.models.otp import Otp
from chatauth_api.models.user import PendingUser, User
from chatauth_api.services.credentials import (
    create_user,
    get_user_by_email,
    hash_password,
    normalize_email,
    set_password,
    verify_credentials,
)
from chatauth_api.services.otp import OtpOwner, discard_otps, issue_otp, verify_otp
from chatauth_api.services.tokens import TokenPair, issue_token_pair, revoke_all_tokens

DEFAULT_DEVICE_NAME = "default"
EMAIL_TAKEN_MESSAGE = "该邮箱已被注册。"

logger = logging.getLogger("chatauth_api.auth_flows")


@dataclass(frozen=True)
class RegistrationTicket:
    """注册申请及其验证码的有效期。"""

    pending: PendingUser
    otp_expires_at: datetime


@dataclass(frozen=True)
class SignedInUser:
    user: User
    tokens: TokenPair


def _load_pending(db: Session, verification_id: UUID, *, clock: Clock) -> PendingUser | None:
    pending = db.get(PendingUser, verification_id)
    if pending is None or as_utc(pending.expires_at) <= clock.now():
        return None
    return pending


def _discard_pending_registrations(db: Session, email: str) -> None:
    """删除该邮箱下全部注册申请及其验证码。"""
    pending_ids = list(db.execute(select(PendingUser.id).where(PendingUser.email == email)).scalars())
    if not pending_ids:
        return
    db.execute(
        delete(Otp)
        .where(Otp.owner_type == OtpOwnerType.PENDING_USER.value)
        .where(Otp.owner_id.in_(pending_ids))
        .execution_options(synchronize_session=False)
    )
    db.execute(
        delete(PendingUser).where(PendingUser.id.in_(pending_ids)).execution_options(synchronize_session=False)
    )


def register_pending_user(
    db: Session,
    *,
    name: str,
    email: str,
    password: str,
    device_name: str | None,
    clock: Clock,
    rng: SecureRandom,
) -> RegistrationTicket:
    """登记注册申请并签发邮箱验证码。

    邮箱已属于正式用户时拒绝。每次调用都生成独立申请，
    验证码只能解锁签发它的那条申请。
    """
    settings = get_settings()
    email = normalize_email(email)
    if get_user_by_email(db, email) is not None:
        raise ValidationFailed({"email": EMAIL_TAKEN_MESSAGE})

    now = clock.now()
    pending = PendingUser(
        id=uuid4(),
        email=email,
        payload={
            "name": name,
            "email": email,
            "password_hash": hash_password(password),
            "device_name": device_name or DEFAULT_DEVICE_NAME,
        },
        expires_at=now + timedelta(seconds=settings.pending_user_ttl_seconds),
    )
    db.add(pending)
    db.flush()

    otp = issue_otp(
        db,
        OtpOwner.for_pending_user(pending),
        purpose=OtpPurpose.EMAIL_VERIFICATION,
        clock=clock,
        rng=rng,
    )
    logger.info("registration pending verification_id=%s email=%s", pending.id, redact_email(email))
    return RegistrationTicket(pending=pending, otp_expires_at=otp.expires_at)


def resend_registration_otp(db: Session, *, verification_id: UUID, clock: Clock, rng: SecureRandom) -> Otp:
    """为注册申请重新签发验证码，受冷却时间约束。"""
    pending = _load_pending(db, verification_id, clock=clock)
    if pending is None:
        raise NotFound("注册申请不存在或已过期，请重新注册。")
    return issue_otp(
        db,
        OtpOwner.for_pending_user(pending),
        purpose=OtpPurpose.EMAIL_VERIFICATION,
        clock=clock,
        rng=rng,
    )


def complete_registration(
    db: Session,
    *,
    verification_id: UUID,
    code: str,
    clock: Clock,
    rng: SecureRandom,
) -> SignedInUser:
    """校验注册验证码，创建已验证用户并签发令牌。

    申请不存在、已过期或已完成验证时，与验证码错误一样返回 InvalidOrExpiredOtp。
    """
    pending = _load_pending(db, verification_id, clock=clock)
    if pending is None:
        raise InvalidOrExpiredOtp()
    verify_otp(
        db,
        OtpOwner.for_pending_user(pending),
        code,
        clock=clock,
        purpose=OtpPurpose.EMAIL_VERIFICATION,
    )

    email = pending.email
    payload = dict(pending.payload)
    if get_user_by_email(db, email) is not None:
        raise ValidationFailed({"email": EMAIL_TAKEN_MESSAGE})

    now = clock.now()
    try:
        user = create_user(
            db,
            email=email,
            display_name=payload["name"],
            password_hash=payload["password_hash"],
            now=now,
            email_verified=True,
        )
    except IntegrityError as exc:
        # 同一邮箱的另一条申请已抢先完成验证。
        db.rollback()
        raise ValidationFailed({"email": EMAIL_TAKEN_MESSAGE}) from exc

    db.expunge(pending)
    _discard_pending_registrations(db, email)
    tokens = issue_token_pair(
        db,
        user_id=user.id,
        device_name=payload.get("device_name") or DEFAULT_DEVICE_NAME,
        clock=clock,
        rng=rng,
    )
    user.last_login_at = now
    logger.info("registration completed user_id=%s email=%s", user.id, redact_email(email))
    return SignedInUser(user=user, tokens=tokens)


def login(
    db: Session,
    *,
    email: str,
    password: str,
    device_name: str,
    clock: Clock,
    rng: SecureRandom,
) -> SignedInUser:
    """邮箱口令登录，为设备签发新令牌并替换该设备的旧令牌。"""
    user = verify_credentials(db, email=email, password=password)
    if user is None:
        logger.info("login failed email=%s", redact_email(normalize_email(email)))
        raise InvalidCredentials()

    tokens = issue_token_pair(db, user_id=user.id, device_name=device_name, clock=clock, rng=rng)
    user.last_login_at = clock.now()
    logger.info("login succeeded user_id=%s device=%s", user.id, device_name)
    return SignedInUser(user=user, tokens=tokens)


def request_password_reset(db: Session, *, email: str, clock: Clock, rng: SecureRandom) -> Otp | None:
    """为找回密码签发验证码。

    邮箱不存在时，默认返回 NotFound；关闭 auth_reveal_unknown_email 后静默返回 None。
    """
    user = get_user_by_email(db, email)
    if user is None:
        if get_settings().auth_reveal_unknown_email:
            raise NotFound("该邮箱未注册。")
        logger.info("password reset requested for unknown email=%s", redact_email(normalize_email(email)))
        return None

    return issue_otp(db, OtpOwner.for_user(user), purpose=OtpPurpose.PASSWORD_RESET, clock=clock, rng=rng)


def reset_password(db: Session, *, email: str, code: str, new_password: str, clock: Clock) -> User:
    """校验找回密码验证码并设置新口令，同时吊销该用户全部令牌。"""
    user = get_user_by_email(db, email)
    if user is None:
        if get_settings().auth_reveal_unknown_email:
            raise NotFound("该邮箱未注册。")
        raise InvalidOrExpiredOtp()

    owner = OtpOwner.for_user(user)
    verify_otp(db, owner, code, clock=clock, purpose=OtpPurpose.PASSWORD_RESET)
    set_password(db, user_id=user.id, password_hash=hash_password(new_password), now=clock.now())
    revoke_all_tokens(db, user_id=user.id)
    discard_otps(db, owner)
    logger.info("password reset completed user_id=%s", user.id)
    return user


def send_account_verification(db: Session, *, user: User, clock: Clock, rng: SecureRandom) -> Otp:
    """为尚未验证邮箱的已登录用户签发验证码。"""
    if user.email_verified:
        raise AlreadyVerified()
    return issue_otp(db, OtpOwner.for_user(user), purpose=OtpPurpose.EMAIL_VERIFICATION, clock=clock, rng=rng)


def verify_account_email(db: Session, *, user: User, code: str, clock: Clock) -> User:
    """校验已登录用户的邮箱验证码并标记邮箱已验证。"""
    if user.email_verified:
        raise AlreadyVerified()
    owner = OtpOwner.for_user(user)
    verify_otp(db, owner, code, clock=clock, purpose=OtpPurpose.EMAIL_VERIFICATION)
    user.email_verified_at = clock.now()
    discard_otps(db, owner)
    logger.info("account email verified user_id=%s", user.id)
    return user
