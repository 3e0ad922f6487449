"""群组成员关系模型。

该表由外部的群组管理模块维护，本服务只读，用于频道订阅授权。
"""

from uuid import UUID

from sqlalchemy import UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from chatauth_api.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class GroupMembership(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """群组成员关系。"""

    __tablename__ = "user_groups"
    __table_args__ = (UniqueConstraint("group_id", "user_id", name="uk_user_group"),)

    group_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    user_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
