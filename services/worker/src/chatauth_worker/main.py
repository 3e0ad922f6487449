"""验证码投递工作进程。

主流程:
1) 抢占一条待投递任务(queued/retrying)
2) 验证码已过期则标记 expired，否则渲染邮件并发送
3) 成功则 sent，失败则 retrying/dead_letter
4) 按间隔清理过期的注册申请、验证码与令牌
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import create_engine, text

from chatauth_worker.config import get_settings
from chatauth_worker.mailer import SmtpMailer, redact_email, render_otp_message

logger = logging.getLogger("chatauth_worker")

# 投递结束后覆盖验证码明文。
SCRUBBED_CODE = "******"


def _setup_logging() -> None:
    """初始化日志输出格式与级别。"""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def retry_delay(attempt_count: int, *, base_seconds: int, max_seconds: int) -> int:
    """第 attempt_count 次失败后的退避秒数，指数增长并封顶。"""
    return min(base_seconds * (2 ** max(0, attempt_count - 1)), max_seconds)


def _claim_next_delivery(conn, worker_id: str, lock_timeout_seconds: int) -> dict[str, Any] | None:
    """抢占下一条可投递任务。

    `FOR UPDATE SKIP LOCKED` 避免多个工作进程领取同一任务；
    锁超时的任务允许被重新抢占，处理工作进程异常退出场景。
    """
    stmt = text(
        """
        WITH candidate AS (
            SELECT id
            FROM otp_deliveries
            WHERE status IN ('queued', 'retrying')
              AND next_run_at <= now()
              AND (
                  locked_at IS NULL
                  OR locked_at < now() - make_interval(secs => :lock_timeout_seconds)
              )
            ORDER BY next_run_at
            FOR UPDATE SKIP LOCKED
            LIMIT 1
        )
        UPDATE otp_deliveries AS d
        SET status = 'processing',
            locked_at = now(),
            locked_by = :worker_id,
            attempt_count = d.attempt_count + 1,
            updated_at = now(),
            error = NULL
        FROM candidate
        WHERE d.id = candidate.id
        RETURNING
            d.id,
            d.recipient,
            d.code,
            d.purpose,
            d.code_expires_at,
            d.attempt_count,
            d.max_attempts
        """
    )
    row = conn.execute(
        stmt,
        {
            "worker_id": worker_id,
            "lock_timeout_seconds": lock_timeout_seconds,
        },
    ).mappings().first()
    return dict(row) if row else None


def _finish_delivery(conn, delivery_id: UUID, *, status: str, error_message: str | None = None) -> None:
    """结束投递任务并清除验证码明文。"""
    conn.execute(
        text(
            """
            UPDATE otp_deliveries
            SET status = :status,
                code = :scrubbed,
                sent_at = CASE WHEN :mark_sent THEN now() ELSE sent_at END,
                error = :error_message,
                locked_at = NULL,
                locked_by = NULL,
                updated_at = now()
            WHERE id = :delivery_id
            """
        ),
        {
            "delivery_id": str(delivery_id),
            "status": status,
            "mark_sent": status == "sent",
            "scrubbed": SCRUBBED_CODE,
            "error_message": error_message,
        },
    )


def _mark_failure(
    conn,
    *,
    delivery_id: UUID,
    attempt_count: int,
    max_attempts: int,
    base_seconds: int,
    max_seconds: int,
    error_message: str,
) -> str:
    """按重试策略处理失败任务，返回新状态。"""
    if attempt_count >= max_attempts:
        # 超过最大重试：进入死信，等待人工排查。
        _finish_delivery(conn, delivery_id, status="dead_letter", error_message=error_message)
        return "dead_letter"

    conn.execute(
        text(
            """
            UPDATE otp_deliveries
            SET status = 'retrying',
                error = :error_message,
                next_run_at = now() + make_interval(secs => :delay_seconds),
                locked_at = NULL,
                locked_by = NULL,
                updated_at = now()
            WHERE id = :delivery_id
            """
        ),
        {
            "delivery_id": str(delivery_id),
            "error_message": error_message,
            "delay_seconds": retry_delay(attempt_count, base_seconds=base_seconds, max_seconds=max_seconds),
        },
    )
    return "retrying"


_HOUSEKEEPING_STATEMENTS: dict[str, str] = {
    "pending_user_otps": """
        DELETE FROM otps
        WHERE owner_type = 'pending_user'
          AND owner_id IN (SELECT id FROM pending_users WHERE expires_at < now())
    """,
    "pending_users": "DELETE FROM pending_users WHERE expires_at < now()",
    "otps": "DELETE FROM otps WHERE expires_at < now() OR consumed_at IS NOT NULL",
    "access_tokens": "DELETE FROM access_tokens WHERE expires_at < now()",
    "refresh_tokens": "DELETE FROM refresh_tokens WHERE expires_at < now()",
    "stale_deliveries": f"""
        UPDATE otp_deliveries
        SET status = 'expired', code = '{SCRUBBED_CODE}', locked_at = NULL, locked_by = NULL, updated_at = now()
        WHERE status IN ('queued', 'retrying') AND code_expires_at < now()
    """,
}


def _run_housekeeping(conn) -> dict[str, int]:
    """清理过期数据，返回各项影响行数。"""
    return {name: conn.execute(text(sql)).rowcount for name, sql in _HOUSEKEEPING_STATEMENTS.items()}


def _deliver(mailer: SmtpMailer, delivery: dict[str, Any], *, app_name: str, validity_minutes: int) -> None:
    message = render_otp_message(
        purpose=delivery["purpose"],
        code=delivery["code"],
        app_name=app_name,
        validity_minutes=validity_minutes,
    )
    mailer.send(delivery["recipient"], message)


def main() -> None:
    """工作进程主循环。"""
    _setup_logging()
    settings = get_settings()
    engine = create_engine(settings.database_url, future=True, pool_pre_ping=True)
    mailer = SmtpMailer(settings)
    validity_minutes = max(1, settings.otp_ttl_seconds // 60)

    logger.info(
        "worker started worker_id=%s smtp_configured=%s",
        settings.worker_id,
        mailer.is_configured,
    )
    next_housekeeping_at = 0.0

    while True:
        claimed: dict[str, Any] | None = None
        try:
            if time.monotonic() >= next_housekeeping_at:
                with engine.begin() as conn:
                    counts = _run_housekeeping(conn)
                logger.info("housekeeping done %s", " ".join(f"{k}={v}" for k, v in counts.items()))
                next_housekeeping_at = time.monotonic() + settings.housekeeping_interval_seconds

            with engine.begin() as conn:
                claimed = _claim_next_delivery(
                    conn,
                    worker_id=settings.worker_id,
                    lock_timeout_seconds=settings.worker_lock_timeout_seconds,
                )

            if not claimed:
                # 没有可执行任务时短暂休眠，降低数据库轮询压力。
                time.sleep(settings.worker_poll_interval_seconds)
                continue

            logger.info(
                "claimed delivery id=%s purpose=%s to=%s attempt=%s/%s",
                claimed["id"],
                claimed["purpose"],
                redact_email(claimed["recipient"]),
                claimed["attempt_count"],
                claimed["max_attempts"],
            )

            if _as_utc(claimed["code_expires_at"]) <= datetime.now(timezone.utc):
                with engine.begin() as conn:
                    _finish_delivery(conn, claimed["id"], status="expired")
                logger.info("delivery expired id=%s", claimed["id"])
                continue

            _deliver(mailer, claimed, app_name=settings.app_name, validity_minutes=validity_minutes)
            with engine.begin() as conn:
                _finish_delivery(conn, claimed["id"], status="sent")
            logger.info("delivery sent id=%s", claimed["id"])
        except KeyboardInterrupt:
            logger.info("worker stopped")
            return
        except Exception as exc:
            if not claimed:
                # 抢占前出现异常，记录后进入下一轮轮询。
                logger.exception("worker loop error without claimed delivery")
                time.sleep(settings.worker_poll_interval_seconds)
                continue

            err = str(exc)[:2000]
            logger.exception("delivery failed id=%s error=%s", claimed["id"], err)
            with engine.begin() as conn:
                status = _mark_failure(
                    conn,
                    delivery_id=claimed["id"],
                    attempt_count=claimed["attempt_count"],
                    max_attempts=claimed["max_attempts"],
                    base_seconds=settings.delivery_retry_base_seconds,
                    max_seconds=settings.delivery_retry_max_seconds,
                    error_message=err,
                )
            if status == "dead_letter":
                logger.error("delivery moved to dead letter id=%s", claimed["id"])


if __name__ == "__main__":
    main()
