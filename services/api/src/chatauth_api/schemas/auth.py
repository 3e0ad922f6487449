"""注册、登录、令牌与验证码相关的请求与返回结构。"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from chatauth_api.schemas.common import BaseSchema
from chatauth_api.schemas.responses import UserProfile
from chatauth_api.services.credentials import password_policy_errors

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
OTP_PATTERN = r"^\d{6}$"


def _email_field():
    return Field(
        min_length=5,
        max_length=256,
        pattern=EMAIL_PATTERN,
        description="登录邮箱。",
        examples=["alice@example.com"],
    )


def _otp_field():
    return Field(pattern=OTP_PATTERN, description="6 位数字验证码，保留前导零。", examples=["482913"])


def _device_field(required: bool = True):
    kwargs = {"min_length": 1, "max_length": 128, "description": "客户端设备名，每个设备名同一时刻只保留一组令牌。"}
    if required:
        return Field(examples=["alice-iphone"], **kwargs)
    return Field(default=None, examples=["alice-iphone"], **kwargs)


class _NewPasswordMixin(BaseModel):
    """新口令与确认口令。"""

    password: str = Field(max_length=128, description="新口令，需包含大小写字母、数字与符号。", examples=["StrongPassw0rd!"])
    password_confirmation: str = Field(max_length=128, description="再次输入的口令。", examples=["StrongPassw0rd!"])

    @field_validator("password")
    @classmethod
    def check_password_policy(cls, value: str) -> str:
        errors = password_policy_errors(value)
        if errors:
            raise ValueError(" ".join(errors))
        return value

    @model_validator(mode="after")
    def check_confirmation(self):
        if self.password != self.password_confirmation:
            raise ValueError("两次输入的口令不一致。")
        return self


class RegisterRequest(_NewPasswordMixin):
    """注册申请请求。"""

    name: str = Field(min_length=1, max_length=128, description="展示名。", examples=["Alice"])
    email: str = _email_field()
    device_name: str | None = _device_field(required=False)


class VerifyRegistrationRequest(BaseModel):
    """注册邮箱验证请求。"""

    verification_id: UUID = Field(description="注册时返回的申请 ID。")
    otp: str = _otp_field()


class ResendOtpRequest(BaseModel):
    """重新发送注册验证码请求。"""

    verification_id: UUID = Field(description="注册时返回的申请 ID。")


class VerifyAccountRequest(BaseModel):
    """已登录用户的邮箱验证请求。"""

    otp: str = _otp_field()


class LoginRequest(BaseModel):
    """邮箱口令登录请求。"""

    email: str = _email_field()
    password: str = Field(min_length=1, max_length=128, description="登录口令。", examples=["StrongPassw0rd!"])
    device_name: str = _device_field()


class RefreshRequest(BaseModel):
    """刷新令牌轮换请求。"""

    refresh_token: str = Field(min_length=1, max_length=256, description="当前持有的刷新令牌。")
    device_name: str = _device_field()


class LogoutRequest(BaseModel):
    """登出请求，未传设备名时登出当前访问令牌所属设备。"""

    device_name: str | None = _device_field(required=False)


class ForgotPasswordRequest(BaseModel):
    """找回密码请求。"""

    email: str = _email_field()


class ResetPasswordRequest(_NewPasswordMixin):
    """重置密码请求。"""

    email: str = _email_field()
    otp: str = _otp_field()


class RegisterData(BaseSchema):
    """注册申请结果。"""

    verification_id: UUID = Field(description="注册申请 ID，验证邮箱与重发验证码时使用。")
    email: str = Field(description="接收验证码的邮箱。")
    expires_at: datetime = Field(description="验证码过期时间（UTC）。")


class TokenPairData(BaseSchema):
    """登录、注册验证与令牌轮换的返回结构。"""

    # 与 access_token 相同，兼容只读取 token 字段的客户端。
    token: str = Field(description="访问令牌。")
    access_token: str = Field(description="访问令牌，明文只返回这一次。")
    refresh_token: str = Field(description="刷新令牌，明文只返回这一次。")
    token_type: str = Field(default="bearer", description="令牌类型。")
    expires_at: datetime = Field(description="访问令牌过期时间（UTC）。")
    expires_in: int = Field(description="访问令牌有效期（秒）。")
    refresh_expires_at: datetime = Field(description="刷新令牌过期时间（UTC）。")
    user: UserProfile | None = Field(default=None, description="登录用户资料，令牌轮换时不返回。")


class OtpDispatchData(BaseSchema):
    """验证码已受理发送的结果。"""

    message: str = Field(description="操作结果提示。")
    expires_at: datetime | None = Field(default=None, description="验证码过期时间（UTC），不透露账号是否存在时为空。")


class LogoutData(BaseSchema):
    """登出结果结构。"""

    logged_out: bool = Field(description="是否已完成登出。")
    revoked: int = Field(description="本次吊销的令牌条数。")
