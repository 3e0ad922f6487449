"""领域枚举定义。"""

from enum import StrEnum


class UserStatus(StrEnum):
    """用户状态。"""

    ACTIVE = "active"  # 正常可用，可登录。
    DISABLED = "disabled"  # 已禁用，拒绝登录与令牌认证。


class OtpOwnerType(StrEnum):
    """验证码归属主体类型。"""

    USER = "user"  # 已注册用户（找回密码、补充验证邮箱）。
    PENDING_USER = "pending_user"  # 待验证的注册申请。


class OtpPurpose(StrEnum):
    """验证码用途，决定投递邮件的文案。"""

    EMAIL_VERIFICATION = "email_verification"  # 注册或补充验证邮箱。
    PASSWORD_RESET = "password_reset"  # 找回密码。


class DeliveryStatus(StrEnum):
    """验证码投递任务状态。"""

    QUEUED = "queued"  # 已创建，等待工作进程发送。
    PROCESSING = "processing"  # 发送中。
    RETRYING = "retrying"  # 发送失败后等待重试。
    SENT = "sent"  # 已发送。
    EXPIRED = "expired"  # 验证码已过期，放弃发送。
    DEAD_LETTER = "dead_letter"  # 超过重试上限。


class ChannelKind(StrEnum):
    """实时频道类型。"""

    USER = "user"  # 单用户通知频道 user.{id}。
    GROUP = "group"  # 群聊频道 group.{groupId}。
