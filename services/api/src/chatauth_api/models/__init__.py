"""ORM 模型导出集合。"""

from chatauth_api.models.auth import AccessToken, RefreshToken, UserCredential
from chatauth_api.models.group import GroupMembership
from chatauth_api.models.otp import Otp, OtpDelivery
from chatauth_api.models.user import PendingUser, User

__all__ = [
    "AccessToken",
    "GroupMembership",
    "Otp",
    "OtpDelivery",
    "PendingUser",
    "RefreshToken",
    "User",
    "UserCredential",
]
