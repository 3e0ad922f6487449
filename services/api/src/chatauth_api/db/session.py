"""数据库会话管理。"""

from collections.abc import Callable, Generator
import logging
from typing import TypeVar

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from chatauth_api.core.config import get_settings

settings = get_settings()
logger = logging.getLogger("chatauth_api.db")

# 全局数据库引擎，开启连接预检查以减少僵尸连接影响。
engine = create_engine(settings.database_url, future=True, pool_pre_ping=True)
# 统一会话工厂，路由层通过依赖注入获取短生命周期会话。
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, class_=Session)

T = TypeVar("T")


def get_db() -> Generator[Session, None, None]:
    """为每个请求提供独立数据库会话。"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def run_read_with_retry(db: Session, operation: Callable[[], T]) -> T:
    """执行只读查询，遇到连接类故障时回滚并重试一次。

    仅用于幂等读；写操作的原子性冲突由调用方按业务语义处理，不在此重试。
    """
    try:
        return operation()
    except OperationalError:
        logger.warning("storage read failed, retrying once", exc_info=True)
        db.rollback()
        return operation()
