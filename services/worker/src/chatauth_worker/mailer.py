"""验证码邮件渲染与 SMTP 发送。"""

from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
import html
import logging
import smtplib
import ssl

from chatauth_worker.config import Settings

logger = logging.getLogger("chatauth_worker.mailer")

PURPOSE_EMAIL_VERIFICATION = "email_verification"
PURPOSE_PASSWORD_RESET = "password_reset"


class MailDeliveryError(RuntimeError):
    """邮件发送失败，由主循环按重试策略处理。"""


@dataclass(frozen=True)
class OtpMessage:
    subject: str
    text_body: str
    html_body: str


def redact_email(email: str) -> str:
    """日志中使用的脱敏邮箱。"""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def render_otp_message(*, purpose: str, code: str, app_name: str, validity_minutes: int) -> OtpMessage:
    """按用途渲染验证码邮件。"""
    if purpose == PURPOSE_EMAIL_VERIFICATION:
        subject = f"{app_name} - Verify Your Email Address"
        greeting = f"Hello! Welcome to {app_name}"
        main_message = "Thanks for signing up! Please verify your email address to get started."
    elif purpose == PURPOSE_PASSWORD_RESET:
        subject = f"{app_name} - Reset Your Password"
        greeting = "Hello! Need to reset your password?"
        main_message = "We received a request to reset your password."
    else:
        raise ValueError(f"unknown otp purpose: {purpose}")

    validity = f"{validity_minutes} minutes"
    text_body = (
        f"{greeting}\n\n"
        f"{main_message}\n\n"
        f"Your verification code is: {code}\n\n"
        f"This code is valid for {validity}. If you did not request it, you can ignore this email.\n"
    )
    html_body = (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\"></head><body>"
        f"<h2>{html.escape(greeting)}</h2>"
        f"<p>{html.escape(main_message)}</p>"
        f"<p style=\"font-size:32px;font-weight:700;letter-spacing:10px\">{html.escape(code)}</p>"
        f"<p>This code is valid for {html.escape(validity)}. "
        "If you did not request it, you can ignore this email.</p>"
        "</body></html>"
    )
    return OtpMessage(subject=subject, text_body=text_body, html_body=html_body)


class SmtpMailer:
    """基于 smtplib 的发件器，未配置 SMTP 时进入开发模式只记录日志。"""

    def __init__(self, settings: Settings) -> None:
        self.smtp_host = settings.smtp_host
        self.smtp_port = settings.smtp_port
        self.smtp_user = settings.smtp_user
        self.smtp_password = settings.smtp_password
        self.smtp_use_tls = settings.smtp_use_tls
        self.timeout = settings.smtp_timeout_seconds
        self.from_address = settings.mail_from_address or settings.smtp_user
        self.from_name = settings.mail_from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_address)

    def _build(self, to_email: str, message: OtpMessage) -> MIMEMultipart:
        mime = MIMEMultipart("alternative")
        mime["Subject"] = message.subject
        mime["From"] = f"{self.from_name} <{self.from_address}>"
        mime["To"] = to_email
        mime.attach(MIMEText(message.text_body, "plain", "utf-8"))
        mime.attach(MIMEText(message.html_body, "html", "utf-8"))
        return mime

    def send(self, to_email: str, message: OtpMessage) -> None:
        """发送邮件，失败抛出 MailDeliveryError。"""
        if not self.is_configured:
            # 开发模式：不输出验证码本身。
            logger.info("email dev mode to=%s subject=%s", redact_email(to_email), message.subject)
            return

        mime = self._build(to_email, message)
        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_address, [to_email], mime.as_string())
            else:
                with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=self.timeout) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_address, [to_email], mime.as_string())
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            raise MailDeliveryError(f"{type(exc).__name__}: {exc}") from exc

        logger.info("email sent to=%s subject=%s", redact_email(to_email), message.subject)
