"""认证接口：注册与邮箱验证、登录、令牌轮换、登出、找回密码。"""

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from chatauth_api.core.clock import Clock, SecureRandom, get_clock, get_secure_random
from chatauth_api.db.session import get_db
from chatauth_api.dependencies import get_current_session, get_current_user, throttle_requests
from chatauth_api.models.user import User
from chatauth_api.schemas.auth import (
    ForgotPasswordRequest,
    LoginRequest,
    LogoutData,
    LogoutRequest,
    OtpDispatchData,
    RefreshRequest,
    RegisterData,
    RegisterRequest,
    ResendOtpRequest,
    ResetPasswordRequest,
    TokenPairData,
    VerifyAccountRequest,
    VerifyRegistrationRequest,
)
from chatauth_api.schemas.common import ErrorResponse, MessageData, SuccessResponse
from chatauth_api.schemas.responses import MeData
from chatauth_api.services import auth_flows
from chatauth_api.services.tokens import (
    AuthenticatedSession,
    TokenPair,
    revoke_all_tokens,
    revoke_device_tokens,
    rotate_refresh_token,
)
from chatauth_api.utils.response import success

router = APIRouter(prefix="/auth", tags=["auth"])

OTP_SENT_MESSAGE = "验证码已发送，请查收邮件。"


def _user_profile(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "display_name": user.display_name,
        "status": user.status,
        "email_verified": user.email_verified,
        "email_verified_at": user.email_verified_at,
        "last_login_at": user.last_login_at,
    }


def _token_pair_data(tokens: TokenPair, user: User | None = None) -> dict:
    return {
        "token": tokens.access_token,
        "access_token": tokens.access_token,
        "refresh_token": tokens.refresh_token,
        "token_type": "bearer",
        "expires_at": tokens.access_expires_at,
        "expires_in": tokens.expires_in,
        "refresh_expires_at": tokens.refresh_expires_at,
        "user": _user_profile(user) if user is not None else None,
    }


@router.post(
    "/register",
    summary="提交注册申请",
    description="登记注册资料并向邮箱发送 6 位验证码，验证通过后账号才会创建。",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessResponse[RegisterData],
    responses={422: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
    dependencies=[Depends(throttle_requests("register"))],
)
def register(
    payload: RegisterRequest,
    request: Request,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    rng: SecureRandom = Depends(get_secure_random),
):
    """提交注册申请。"""
    ticket = auth_flows.register_pending_user(
        db,
        name=payload.name.strip(),
        email=payload.email,
        password=payload.password,
        device_name=payload.device_name,
        clock=clock,
        rng=rng,
    )
    data = {
        "verification_id": ticket.pending.id,
        "email": ticket.pending.email,
        "expires_at": ticket.otp_expires_at,
    }
    db.commit()
    return success(request, data, message=OTP_SENT_MESSAGE)


@router.post(
    "/email/verify",
    summary="验证注册邮箱",
    description="提交注册申请 ID 与邮箱验证码，验证通过后创建账号并直接登录。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[TokenPairData],
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
    dependencies=[Depends(throttle_requests("email-verify"))],
)
def verify_registration(
    payload: VerifyRegistrationRequest,
    request: Request,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    rng: SecureRandom = Depends(get_secure_random),
):
    """验证注册邮箱并签发令牌。"""
    signed_in = auth_flows.complete_registration(
        db,
        verification_id=payload.verification_id,
        code=payload.otp,
        clock=clock,
        rng=rng,
    )
    data = _token_pair_data(signed_in.tokens, signed_in.user)
    db.commit()
    return success(request, data, message="邮箱验证成功。")


@router.post(
    "/email/resend-otp",
    summary="重发注册验证码",
    description="为注册申请重新发送验证码，上一条验证码随即失效；30 秒内不能重复申请。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[OtpDispatchData],
    responses={404: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
    dependencies=[Depends(throttle_requests("email-resend"))],
)
def resend_registration_otp(
    payload: ResendOtpRequest,
    request: Request,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    rng: SecureRandom = Depends(get_secure_random),
):
    """重发注册验证码。"""
    otp = auth_flows.resend_registration_otp(db, verification_id=payload.verification_id, clock=clock, rng=rng)
    data = {"message": OTP_SENT_MESSAGE, "expires_at": otp.expires_at}
    db.commit()
    return success(request, data)


@router.post(
    "/email/verification-notification",
    summary="发送账号邮箱验证码",
    description="已登录但邮箱未验证的用户申请验证码；邮箱已验证时返回 409。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[OtpDispatchData],
    responses={401: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
    dependencies=[Depends(throttle_requests("email-resend"))],
)
def send_verification_notification(
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    rng: SecureRandom = Depends(get_secure_random),
):
    """向当前用户邮箱发送验证码。"""
    otp = auth_flows.send_account_verification(db, user=user, clock=clock, rng=rng)
    data = {"message": OTP_SENT_MESSAGE, "expires_at": otp.expires_at}
    db.commit()
    return success(request, data)


@router.post(
    "/email/verify-account",
    summary="验证账号邮箱",
    description="已登录用户提交邮箱验证码，完成邮箱验证。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[MessageData],
    responses={401: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
    dependencies=[Depends(throttle_requests("email-verify"))],
)
def verify_account(
    payload: VerifyAccountRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """校验当前用户的邮箱验证码。"""
    auth_flows.verify_account_email(db, user=user, code=payload.otp, clock=clock)
    db.commit()
    return success(request, {"message": "邮箱验证成功。"})


@router.post(
    "/login",
    summary="邮箱口令登录",
    description="使用邮箱口令登录，为设备签发访问令牌与刷新令牌；同一设备名之前的令牌随即失效。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[TokenPairData],
    responses={401: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
    dependencies=[Depends(throttle_requests("login"))],
)
def login(
    payload: LoginRequest,
    request: Request,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    rng: SecureRandom = Depends(get_secure_random),
):
    """邮箱口令登录。"""
    signed_in = auth_flows.login(
        db,
        email=payload.email,
        password=payload.password,
        device_name=payload.device_name,
        clock=clock,
        rng=rng,
    )
    data = _token_pair_data(signed_in.tokens, signed_in.user)
    db.commit()
    return success(request, data, message="登录成功。")


@router.post(
    "/refresh",
    summary="轮换刷新令牌",
    description="用刷新令牌换取新的访问令牌与刷新令牌，旧刷新令牌立即永久失效。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[TokenPairData],
    responses={401: {"model": ErrorResponse}},
)
def refresh(
    payload: RefreshRequest,
    request: Request,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    rng: SecureRandom = Depends(get_secure_random),
):
    """轮换刷新令牌。"""
    tokens = rotate_refresh_token(
        db,
        refresh_token=payload.refresh_token,
        device_name=payload.device_name,
        clock=clock,
        rng=rng,
    )
    db.commit()
    return success(request, _token_pair_data(tokens))


@router.post(
    "/logout",
    summary="登出当前设备",
    description="吊销指定设备（默认当前访问令牌所属设备）的访问令牌与刷新令牌。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[LogoutData],
    responses={401: {"model": ErrorResponse}},
)
def logout(
    request: Request,
    payload: LogoutRequest | None = None,
    session: AuthenticatedSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """登出设备。"""
    device_name = (payload.device_name if payload else None) or session.device_name
    revoked = revoke_device_tokens(db, user_id=session.user.id, device_name=device_name)
    db.commit()
    return success(request, {"logged_out": True, "revoked": revoked})


@router.post(
    "/logout-all",
    summary="登出全部设备",
    description="吊销当前用户在所有设备上的访问令牌与刷新令牌。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[LogoutData],
    responses={401: {"model": ErrorResponse}},
)
def logout_all(
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """登出全部设备。"""
    revoked = revoke_all_tokens(db, user_id=user.id)
    db.commit()
    return success(request, {"logged_out": True, "revoked": revoked})


@router.get(
    "/me",
    summary="获取当前身份",
    description="返回当前用户资料与访问令牌所属设备。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[MeData],
    responses={401: {"model": ErrorResponse}},
)
def me(request: Request, session: AuthenticatedSession = Depends(get_current_session)):
    """查询当前登录身份。"""
    return success(
        request,
        {
            "user": _user_profile(session.user),
            "device_name": session.device_name,
            "token_expires_at": session.expires_at,
        },
    )


@router.post(
    "/forgot-password",
    summary="申请找回密码",
    description="向账号邮箱发送重置密码验证码；30 秒内不能重复申请。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[OtpDispatchData],
    responses={404: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
    dependencies=[Depends(throttle_requests("forgot-password"))],
)
def forgot_password(
    payload: ForgotPasswordRequest,
    request: Request,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    rng: SecureRandom = Depends(get_secure_random),
):
    """申请重置密码验证码。"""
    otp = auth_flows.request_password_reset(db, email=payload.email, clock=clock, rng=rng)
    data = {"message": OTP_SENT_MESSAGE, "expires_at": otp.expires_at if otp is not None else None}
    db.commit()
    return success(request, data)


@router.post(
    "/reset-password",
    summary="重置密码",
    description="校验重置密码验证码并设置新口令，成功后该账号所有设备的令牌全部失效。",
    status_code=status.HTTP_200_OK,
    response_model=SuccessResponse[MessageData],
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
    dependencies=[Depends(throttle_requests("reset-password"))],
)
def reset_password(
    payload: ResetPasswordRequest,
    request: Request,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """重置密码。"""
    auth_flows.reset_password(
        db,
        email=payload.email,
        code=payload.otp,
        new_password=payload.password,
        clock=clock,
    )
    db.commit()
    return success(request, {"message": "密码已重置，请重新登录。"})
