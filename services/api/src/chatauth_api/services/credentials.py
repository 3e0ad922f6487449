"""本地账号凭据存储：口令哈希、按邮箱查找与口令校验。"""

from __future__ import annotations

import base64
import binascii
from datetime import datetime
import hashlib
import hmac
from functools import lru_cache
import secrets
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from chatauth_api.core.config import get_settings
from chatauth_api.models.auth import UserCredential
from chatauth_api.models.enums import UserStatus
from chatauth_api.models.user import User


def normalize_email(value: str) -> str:
    """标准化邮箱字段（去空格 + 小写）。"""
    return value.strip().lower()


def hash_password(password: str) -> str:
    """使用 PBKDF2-SHA256 生成口令哈希。"""
    settings = get_settings()
    return _pbkdf2_hash(password, secrets.token_bytes(16), settings.auth_password_hash_iterations)


def _pbkdf2_hash(password: str, salt: bytes, iterations: int) -> str:
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    salt_b64 = base64.b64encode(salt).decode("ascii")
    digest_b64 = base64.b64encode(digest).decode("ascii")
    return f"pbkdf2_sha256${iterations}${salt_b64}${digest_b64}"


def verify_password(password: str, password_hash: str) -> bool:
    """校验口令是否匹配。"""
    try:
        algorithm, iterations_text, salt_b64, expected_digest_b64 = password_hash.split("$", 3)
        if algorithm != "pbkdf2_sha256":
            return False
        iterations = int(iterations_text)
        salt = base64.b64decode(salt_b64.encode("ascii"))
        expected_digest = base64.b64decode(expected_digest_b64.encode("ascii"))
    except (ValueError, TypeError, binascii.Error):
        return False

    actual_digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    return hmac.compare_digest(actual_digest, expected_digest)


@lru_cache
def _dummy_password_hash(iterations: int) -> str:
    return _pbkdf2_hash("dummy-password", b"\x00" * 16, iterations)


def get_user_by_email(db: Session, email: str) -> User | None:
    """按标准化邮箱查找用户。"""
    return db.execute(select(User).where(User.email == normalize_email(email))).scalar_one_or_none()


def verify_credentials(db: Session, *, email: str, password: str) -> User | None:
    """校验邮箱口令，成功返回用户。

    邮箱不存在时仍执行一次等价成本的哈希计算，避免通过响应耗时区分账号是否存在。
    """
    user = get_user_by_email(db, email)
    credential = None
    if user is not None and user.status == UserStatus.ACTIVE:
        credential = db.execute(
            select(UserCredential).where(UserCredential.user_id == user.id)
        ).scalar_one_or_none()

    if credential is None:
        verify_password(password, _dummy_password_hash(get_settings().auth_password_hash_iterations))
        return None
    if not verify_password(password, credential.password_hash):
        return None
    return user


def create_user(
    db: Session,
    *,
    email: str,
    display_name: str,
    password_hash: str,
    now: datetime,
    email_verified: bool,
) -> User:
    """创建用户与本地凭据。"""
    user = User(
        id=uuid4(),
        email=normalize_email(email),
        display_name=display_name,
        status=UserStatus.ACTIVE,
        email_verified_at=now if email_verified else None,
    )
    db.add(user)
    db.flush()
    db.add(
        UserCredential(
            id=uuid4(),
            user_id=user.id,
            password_hash=password_hash,
            password_updated_at=now,
        )
    )
    db.flush()
    return user


def set_password(db: Session, *, user_id: UUID, password_hash: str, now: datetime) -> None:
    """更新用户口令哈希，不存在凭据时补建。"""
    result = db.execute(
        update(UserCredential)
        .where(UserCredential.user_id == user_id)
        .values(password_hash=password_hash, password_updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.add(UserCredential(id=uuid4(), user_id=user_id, password_hash=password_hash, password_updated_at=now))
        db.flush()


def password_policy_errors(password: str) -> list[str]:
    """按口令策略检查口令，返回未满足的规则说明，空列表表示通过。"""
    settings = get_settings()
    errors: list[str] = []
    if len(password) < settings.auth_password_min_length:
        errors.append(f"密码长度至少为 {settings.auth_password_min_length} 位。")
    if not any(ch.islower() for ch in password) or not any(ch.isupper() for ch in password):
        errors.append("密码必须同时包含大写与小写字母。")
    if not any(ch.isdigit() for ch in password):
        errors.append("密码必须包含数字。")
    if all(ch.isalnum() for ch in password):
        errors.append("密码必须包含符号。")
    return errors
