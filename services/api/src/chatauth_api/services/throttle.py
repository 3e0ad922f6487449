"""敏感接口请求限流（固定窗口）。

配置 Redis 时计数在多进程间共享；未配置或 Redis 不可用时回退到进程内计数。
"""

from datetime import datetime
import logging
from threading import Lock

from redis import Redis
from redis.exceptions import RedisError

from chatauth_api.core.config import get_settings
from chatauth_api.core.errors import RateLimited

logger = logging.getLogger("chatauth_api.throttle")

_LOCAL_COUNTERS: dict[str, tuple[int, int]] = {}
_LOCAL_LOCK = Lock()
_redis_client: Redis | None = None


def _get_redis() -> Redis | None:
    global _redis_client
    settings = get_settings()
    if not settings.redis_url:
        return None
    if _redis_client is None:
        _redis_client = Redis.from_url(settings.redis_url, decode_responses=True)
    return _redis_client


def _cleanup_local(now_ts: int) -> None:
    expired_keys = [key for key, (_, window_end) in _LOCAL_COUNTERS.items() if window_end <= now_ts]
    for key in expired_keys:
        _LOCAL_COUNTERS.pop(key, None)


def reset_local_state() -> None:
    """清空进程内计数。"""
    global _redis_client
    with _LOCAL_LOCK:
        _LOCAL_COUNTERS.clear()
    _redis_client = None


def _count_hit(key: str, *, window_end: int, now_ts: int) -> int:
    redis_client = _get_redis()
    if redis_client is not None:
        try:
            pipe = redis_client.pipeline()
            pipe.incr(key)
            pipe.expireat(key, window_end)
            count, _ = pipe.execute()
            return int(count)
        except RedisError:
            logger.warning("redis throttle unavailable, falling back to local counters")

    with _LOCAL_LOCK:
        _cleanup_local(now_ts)
        count, _ = _LOCAL_COUNTERS.get(key, (0, window_end))
        count += 1
        _LOCAL_COUNTERS[key] = (count, window_end)
        return count


def hit(scope: str, identity: str, *, now: datetime) -> None:
    """记录一次请求，超过窗口上限时抛出 RateLimited。"""
    settings = get_settings()
    window = settings.throttle_window_seconds
    now_ts = int(now.timestamp())
    window_start = now_ts - now_ts % window
    window_end = window_start + window
    key = f"{settings.throttle_key_prefix}{scope}:{identity}:{window_start}"

    count = _count_hit(key, window_end=window_end, now_ts=now_ts)
    if count > settings.throttle_limit:
        logger.info("request throttled scope=%s identity=%s", scope, identity)
        raise RateLimited(retry_after=max(1, window_end - now_ts))
