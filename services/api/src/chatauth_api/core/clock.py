"""时间与安全随机数来源。

所有需要“当前时间”或“随机字节”的组件都通过依赖注入拿到这里的实现，
测试中可替换为可控的假实现。
"""

from datetime import datetime, timezone
import secrets
from typing import Protocol


class Clock(Protocol):
    """当前时间来源。"""

    def now(self) -> datetime: ...


class SecureRandom(Protocol):
    """密码学安全随机数来源。"""

    def token_bytes(self, nbytes: int) -> bytes: ...

    def randbelow(self, upper: int) -> int: ...


class SystemClock:
    """系统 UTC 时钟。"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class SystemRandom:
    """基于 secrets 模块的随机数实现。"""

    def token_bytes(self, nbytes: int) -> bytes:
        return secrets.token_bytes(nbytes)

    def randbelow(self, upper: int) -> int:
        return secrets.randbelow(upper)


_SYSTEM_CLOCK = SystemClock()
_SYSTEM_RANDOM = SystemRandom()


def get_clock() -> Clock:
    """返回默认时钟，路由层通过依赖注入获取。"""
    return _SYSTEM_CLOCK


def get_secure_random() -> SecureRandom:
    """返回默认随机数来源，路由层通过依赖注入获取。"""
    return _SYSTEM_RANDOM


def as_utc(value: datetime) -> datetime:
    """将数据库读回的时间统一为带时区的 UTC 时间。

    SQLite 不保存时区信息，读回的是 naive 时间，这里按 UTC 补齐。
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
