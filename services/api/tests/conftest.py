from collections.abc import Generator
from datetime import datetime, timedelta, timezone
import random
import threading

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import chatauth_api.models  # noqa: F401
from chatauth_api.core.clock import get_clock, get_secure_random
from chatauth_api.core.config import get_settings
from chatauth_api.db.session import get_db
from chatauth_api.main import app
from chatauth_api.models.base import Base
from chatauth_api.services import throttle

T0 = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """只在测试显式推进时才变化的时钟。"""

    def __init__(self, start: datetime = T0) -> None:
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


class ScriptedRandom:
    """可复现的随机源：验证码按脚本依次给出，脚本用完后回落到种子随机数。"""

    def __init__(self, seed: int = 7) -> None:
        self._random = random.Random(seed)
        self.codes: list[int] = []

    def token_bytes(self, nbytes: int) -> bytes:
        return self._random.randbytes(nbytes)

    def randbelow(self, upper: int) -> int:
        if self.codes:
            return self.codes.pop(0)
        return self._random.randrange(upper)


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch):
    monkeypatch.setenv("CA_AUTH_PASSWORD_HASH_ITERATIONS", "1000")
    monkeypatch.setenv("CA_THROTTLE_LIMIT", "100")
    monkeypatch.setenv("CA_BROADCAST_JWT_SECRET", "unit-test-broadcast-secret")
    monkeypatch.delenv("CA_REDIS_URL", raising=False)
    monkeypatch.delenv("CA_AUTH_REVEAL_UNKNOWN_EMAIL", raising=False)
    get_settings.cache_clear()
    throttle.reset_local_state()
    yield
    throttle.reset_local_state()
    get_settings.cache_clear()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def rng() -> ScriptedRandom:
    return ScriptedRandom()


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield sessionmaker(bind=engine, autoflush=False, autocommit=False, class_=Session)
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def api_client(session_factory, clock, rng) -> Generator[TestClient, None, None]:
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_secure_random] = lambda: rng
    try:
        with TestClient(app) as client:
            yield client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def serialized_session_factory(tmp_path):
    """文件型 SQLite，写事务以 BEGIN IMMEDIATE 串行化，供多线程并发用例使用。"""
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
        future=True,
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        # 写事务串行化，等价于数据库行锁下的并发提交。
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(engine)
    try:
        yield sessionmaker(bind=engine, autoflush=False, autocommit=False, class_=Session)
    finally:
        engine.dispose()


def _run_concurrently(factory, action, *, workers: int = 2) -> list[str]:
    """多个线程在屏障处对齐后各自用独立会话执行 action，返回各自的结果标记。"""
    barrier = threading.Barrier(workers)
    outcomes: list[str] = []

    def _run() -> None:
        session = factory()
        try:
            barrier.wait()
            outcomes.append(action(session))
        except Exception as exc:  # pragma: no cover - 失败时输出原因
            session.rollback()
            outcomes.append(f"error:{type(exc).__name__}:{exc}")
        finally:
            session.close()

    threads = [threading.Thread(target=_run) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return sorted(outcomes)


@pytest.fixture
def race(serialized_session_factory):
    """并发执行器：race(action) 以两个线程同时运行 action(session)。"""

    def _race(action, *, workers: int = 2) -> list[str]:
        return _run_concurrently(serialized_session_factory, action, workers=workers)

    return _race
