"""一次性验证码与投递任务模型。"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import DateTime, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from chatauth_api.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from chatauth_api.models.enums import DeliveryStatus


class Otp(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """一次性验证码。

    每个归属主体最多一行，唯一约束保证并发申请时只有一个请求能写入成功。
    """

    __tablename__ = "otps"
    __table_args__ = (UniqueConstraint("owner_type", "owner_id", name="uk_otp_owner"),)

    # 归属主体类型（user/pending_user）。
    owner_type: Mapped[str] = mapped_column(String(32), nullable=False)
    # 归属主体 ID。
    owner_id: Mapped[UUID] = mapped_column(nullable=False)
    # 6 位数字字符串，保留前导零。
    code: Mapped[str] = mapped_column(String(6), nullable=False)
    # 用途（email_verification/password_reset）。
    purpose: Mapped[str] = mapped_column(String(32), nullable=False)
    # 签发时间，用于冷却判断。
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # 使用时间，非空即已消费。
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class OtpDelivery(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """验证码投递任务（发件箱），由工作进程异步发送邮件。"""

    __tablename__ = "otp_deliveries"

    owner_type: Mapped[str] = mapped_column(String(32), nullable=False)
    owner_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    # 收件邮箱。
    recipient: Mapped[str] = mapped_column(String(256), nullable=False)
    code: Mapped[str] = mapped_column(String(6), nullable=False)
    purpose: Mapped[str] = mapped_column(String(32), nullable=False)
    # 验证码失效时间，过期后不再投递。
    code_expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # 任务状态（queued/processing/retrying/sent/expired/dead_letter）。
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=DeliveryStatus.QUEUED, index=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    # 下次允许执行时间（用于重试退避）。
    next_run_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    locked_by: Mapped[str | None] = mapped_column(String(128))
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    # 错误详情摘要。
    error: Mapped[str | None] = mapped_column(Text)
