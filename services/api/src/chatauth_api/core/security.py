"""令牌生成、摘要与 Bearer 头解析工具。"""

import base64
import hashlib
import re

from chatauth_api.core.clock import SecureRandom
from chatauth_api.core.errors import Unauthenticated

_BEARER_PATTERN = re.compile(r"Bearer\s+([^,\s]+)", flags=re.IGNORECASE)


def generate_token(rng: SecureRandom, nbytes: int) -> str:
    """生成 URL 安全的不透明令牌明文。"""
    raw = rng.token_bytes(nbytes)
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def hash_token(plaintext: str) -> str:
    """计算令牌的单向摘要，数据库只保存该摘要。"""
    return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()


def _is_placeholder_token(token: str) -> bool:
    return ("{{" in token and "}}" in token) or ("${" in token and "}" in token)


def extract_bearer_token(authorization: str | None) -> str:
    """从 Authorization 头中提取 Bearer token，兼容重复头被逗号拼接的场景。"""
    if not authorization:
        raise Unauthenticated()
    tokens = _BEARER_PATTERN.findall(authorization)
    # 取最后一个非占位符令牌，跳过调试工具未替换的变量。
    for candidate in reversed(tokens):
        token = candidate.strip()
        if token and not _is_placeholder_token(token):
            return token
    raise Unauthenticated()


def redact_email(email: str) -> str:
    """日志中使用的脱敏邮箱。"""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"
