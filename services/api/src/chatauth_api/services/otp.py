"""一次性验证码管理。

关键约束:
1. 每个归属主体同一时刻最多一个有效验证码，新签发会替换旧验证码。
2. 冷却时间内重复申请直接拒绝；并发申请由 (owner_type, owner_id) 唯一约束裁决。
3. 校验成功与标记已使用在同一条条件更新中完成，同一验证码只能成功一次。
"""

from dataclasses import dataclass
from datetime import timedelta
import hmac
import logging
import math
from uuid import UUID, uuid4

from sqlalchemy import and_, delete, not_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chatauth_api.core.clock import Clock, SecureRandom, as_utc
from chatauth_api.core.config import get_settings
from chatauth_api.core.errors import InvalidOrExpiredOtp, RateLimited
from chatauth_api.core.security import redact_email
from chatauth_api.models.enums import DeliveryStatus, OtpOwnerType, OtpPurpose
from chatauth_api.models.otp import Otp, OtpDelivery
from chatauth_api.models.user import PendingUser, User

OTP_DIGITS = 6
DELIVERY_MAX_ATTEMPTS = 5

logger = logging.getLogger("chatauth_api.otp")


@dataclass(frozen=True)
class OtpOwner:
    """验证码归属主体：已注册用户或待验证注册申请。"""

    kind: OtpOwnerType
    id: UUID
    # 验证码投递地址。
    email: str

    @classmethod
    def for_user(cls, user: User) -> "OtpOwner":
        return cls(kind=OtpOwnerType.USER, id=user.id, email=user.email)

    @classmethod
    def for_pending_user(cls, pending: PendingUser) -> "OtpOwner":
        return cls(kind=OtpOwnerType.PENDING_USER, id=pending.id, email=pending.email)


def generate_code(rng: SecureRandom) -> str:
    """生成定长数字验证码，范围 000000-999999。"""
    return f"{rng.randbelow(10**OTP_DIGITS):0{OTP_DIGITS}d}"


def _owner_clause(owner: OtpOwner):
    return and_(Otp.owner_type == owner.kind.value, Otp.owner_id == owner.id)


def issue_otp(
    db: Session,
    owner: OtpOwner,
    *,
    purpose: OtpPurpose,
    clock: Clock,
    rng: SecureRandom,
) -> Otp:
    """为主体签发新验证码，并写入投递任务。

    冷却期内存在未使用且未过期的验证码时抛出 RateLimited。
    唯一约束冲突说明并发请求已先写入，同样按 RateLimited 处理并回滚本次事务。
    """
    settings = get_settings()
    now = clock.now()
    cooldown = timedelta(seconds=settings.otp_cooldown_seconds)
    cooldown_start = now - cooldown

    current = db.execute(
        select(Otp).where(_owner_clause(owner)).execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if (
        current is not None
        and current.consumed_at is None
        and as_utc(current.expires_at) >= now
        and as_utc(current.issued_at) > cooldown_start
    ):
        wait = as_utc(current.issued_at) + cooldown - now
        logger.info("otp issue rate limited owner_type=%s owner_id=%s", owner.kind, owner.id)
        raise RateLimited(
            "请等待冷却时间结束后再申请新的验证码。",
            retry_after=max(1, math.ceil(wait.total_seconds())),
        )

    # 只删除可被替换的旧验证码；并发请求刚写入的验证码不满足条件，会保留下来触发唯一约束。
    still_cooling = and_(
        Otp.consumed_at.is_(None),
        Otp.expires_at >= now,
        Otp.issued_at > cooldown_start,
    )
    db.execute(
        delete(Otp)
        .where(_owner_clause(owner))
        .where(not_(still_cooling))
        .execution_options(synchronize_session=False)
    )
    if current is not None:
        db.expunge(current)

    otp = Otp(
        id=uuid4(),
        owner_type=owner.kind.value,
        owner_id=owner.id,
        code=generate_code(rng),
        purpose=purpose.value,
        issued_at=now,
        expires_at=now + timedelta(seconds=settings.otp_ttl_seconds),
        consumed_at=None,
    )
    db.add(otp)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        logger.info("otp issue lost race owner_type=%s owner_id=%s", owner.kind, owner.id)
        raise RateLimited(
            "请等待冷却时间结束后再申请新的验证码。",
            retry_after=settings.otp_cooldown_seconds,
        ) from exc

    db.add(
        OtpDelivery(
            id=uuid4(),
            owner_type=owner.kind.value,
            owner_id=owner.id,
            recipient=owner.email,
            code=otp.code,
            purpose=purpose.value,
            code_expires_at=otp.expires_at,
            status=DeliveryStatus.QUEUED,
            attempt_count=0,
            max_attempts=DELIVERY_MAX_ATTEMPTS,
            next_run_at=now,
        )
    )
    db.flush()
    logger.info(
        "otp issued owner_type=%s owner_id=%s purpose=%s recipient=%s",
        owner.kind,
        owner.id,
        purpose,
        redact_email(owner.email),
    )
    return otp


def _load_unconsumed_otp(db: Session, owner: OtpOwner) -> Otp | None:
    return db.execute(
        select(Otp)
        .where(_owner_clause(owner))
        .where(Otp.consumed_at.is_(None))
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def verify_otp(
    db: Session,
    owner: OtpOwner,
    code: str,
    *,
    clock: Clock,
    purpose: OtpPurpose | None = None,
) -> Otp:
    """校验并消费验证码，失败抛出 InvalidOrExpiredOtp。

    指定 purpose 时，用途不一致的验证码按无效处理。
    """
    now = clock.now()
    otp = _load_unconsumed_otp(db, owner)

    if (
        otp is None
        or (purpose is not None and otp.purpose != purpose.value)
        or as_utc(otp.expires_at) < now
        or not hmac.compare_digest(otp.code.encode("utf-8"), code.encode("utf-8"))
    ):
        logger.info("otp verification failed owner_type=%s owner_id=%s", owner.kind, owner.id)
        raise InvalidOrExpiredOtp()

    # 条件更新作为原子裁决：并发校验同一验证码时只有一个请求能命中这一行。
    result = db.execute(
        update(Otp)
        .where(Otp.id == otp.id)
        .where(Otp.consumed_at.is_(None))
        .where(Otp.expires_at >= now)
        .values(consumed_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info("otp already consumed owner_type=%s owner_id=%s", owner.kind, owner.id)
        raise InvalidOrExpiredOtp()

    return otp


def discard_otps(db: Session, owner: OtpOwner) -> int:
    """删除主体名下全部验证码。"""
    result = db.execute(
        delete(Otp).where(_owner_clause(owner)).execution_options(synchronize_session=False)
    )
    return result.rowcount
