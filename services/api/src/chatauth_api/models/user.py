"""用户与注册申请模型。"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from chatauth_api.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from chatauth_api.models.enums import UserStatus


class User(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """已激活的本地账号。"""

    __tablename__ = "users"

    # 登录与通知主邮箱，系统内全局唯一。
    email: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    # 前端展示名。
    display_name: Mapped[str] = mapped_column(String(128), nullable=False)
    # 本地用户状态。
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=UserStatus.ACTIVE)
    # 邮箱验证时间，为空表示尚未验证。
    email_verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    # 最近一次登录时间。
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    @property
    def email_verified(self) -> bool:
        return self.email_verified_at is not None


class PendingUser(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """邮箱验证前的注册申请，验证通过后转为 User 并删除。"""

    __tablename__ = "pending_users"

    # 申请注册的邮箱；同一邮箱可并存多条申请，任一条验证通过后全部清理。
    email: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    # 注册资料（展示名、口令哈希、设备名），不含明文口令。
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    # 申请失效时间。
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
