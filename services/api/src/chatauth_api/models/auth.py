"""认证相关模型。"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import DateTime, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from chatauth_api.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class UserCredential(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """用户本地凭据（邮箱密码）关系。"""

    __tablename__ = "user_credentials"
    __table_args__ = (UniqueConstraint("user_id", name="uk_user_credential_user"),)

    # 用户 ID（逻辑关联 users.id，不声明数据库外键）。
    user_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    # 口令哈希，不存明文。
    password_hash: Mapped[str] = mapped_column(String(256), nullable=False)
    # 最近一次修改口令时间。
    password_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class AccessToken(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """访问令牌，每个用户的每个设备名仅保留一条。"""

    __tablename__ = "access_tokens"
    __table_args__ = (UniqueConstraint("user_id", "device_name", name="uk_access_token_device"),)

    user_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    # 客户端上报的设备名。
    device_name: Mapped[str] = mapped_column(String(255), nullable=False)
    # 令牌明文的 SHA-256 摘要。
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # 签发时一次性确定，使用过程中不会延长。
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class RefreshToken(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """刷新令牌，每个用户的每个设备名仅保留一条，轮换时原地替换。"""

    __tablename__ = "refresh_tokens"
    __table_args__ = (UniqueConstraint("user_id", "device_name", name="uk_refresh_token_device"),)

    user_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    device_name: Mapped[str] = mapped_column(String(255), nullable=False)
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
