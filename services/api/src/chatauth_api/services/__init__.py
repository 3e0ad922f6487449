"""服务层能力导出集合。"""

from chatauth_api.services.auth_flows import (
    complete_registration,
    login,
    register_pending_user,
    request_password_reset,
    resend_registration_otp,
    reset_password,
    send_account_verification,
    verify_account_email,
)
from chatauth_api.services.channels import authorize_channel, sign_channel_grant, strip_transport_prefix
from chatauth_api.services.credentials import hash_password, normalize_email, verify_password
from chatauth_api.services.otp import OtpOwner, discard_otps, issue_otp, verify_otp
from chatauth_api.services.tokens import (
    authenticate_access_token,
    issue_access_token,
    issue_refresh_token,
    issue_token_pair,
    revoke_all_tokens,
    revoke_device_tokens,
    rotate_refresh_token,
)

__all__ = [
    "OtpOwner",
    "authenticate_access_token",
    "authorize_channel",
    "complete_registration",
    "discard_otps",
    "hash_password",
    "issue_access_token",
    "issue_otp",
    "issue_refresh_token",
    "issue_token_pair",
    "login",
    "normalize_email",
    "register_pending_user",
    "request_password_reset",
    "resend_registration_otp",
    "reset_password",
    "revoke_all_tokens",
    "revoke_device_tokens",
    "rotate_refresh_token",
    "send_account_verification",
    "sign_channel_grant",
    "strip_transport_prefix",
    "verify_account_email",
    "verify_otp",
    "verify_password",
]
