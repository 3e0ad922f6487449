"""跨接口复用的返回结构。"""

from datetime import datetime
from uuid import UUID

from pydantic import Field

from chatauth_api.schemas.common import BaseSchema


class HealthStatusData(BaseSchema):
    """健康检查返回结构。"""

    status: str = Field(description="健康状态值，常见为 ok 或 ready。")


class UserProfile(BaseSchema):
    """用户基础资料。"""

    id: UUID = Field(description="用户主键 ID。")
    email: str = Field(description="用户邮箱。")
    display_name: str = Field(description="用户展示名。")
    status: str = Field(description="用户状态，例如 active。")
    email_verified: bool = Field(description="邮箱是否已验证。")
    email_verified_at: datetime | None = Field(default=None, description="邮箱验证时间（UTC）。")
    last_login_at: datetime | None = Field(default=None, description="最近登录时间（UTC）。")


class MeData(BaseSchema):
    """`/auth/me` 接口返回的数据结构。"""

    user: UserProfile = Field(description="当前登录用户信息。")
    device_name: str = Field(description="当前访问令牌绑定的设备名。")
    token_expires_at: datetime = Field(description="当前访问令牌过期时间（UTC）。")
