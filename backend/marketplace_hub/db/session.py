# Engine / Session 工厂：API 请求、Celery 任务、scripts 各自开会话，事务边界由 repository 提交

from __future__ import annotations
from contextlib import contextmanager
from typing import Any, Dict, Generator, Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from marketplace_hub.core.config import settings


def _engine_options(url: str) -> Dict[str, Any]:
    # SQLite（本地 / 测试）不接受连接池大小参数
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_size": settings.DATABASE_POOL_SIZE,
        "max_overflow": settings.DATABASE_MAX_OVERFLOW,
        "pool_pre_ping": True,
        "pool_recycle": 1800,
    }


engine = create_engine(settings.DATABASE_URL, future=True, **_engine_options(settings.DATABASE_URL))

# expire_on_commit=False：sync 报告在逐条提交之后还要读 connection 字段
SessionLocal: sessionmaker[Session] = sessionmaker(
    bind=engine, autoflush=False, expire_on_commit=False, class_=Session, future=True,
)


def get_db() -> Generator[Session, None, None]:
    """FastAPI 依赖：每个请求一个会话。"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """scripts 用；异常时回滚未提交的部分。"""
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def dispose_engine() -> None:
    engine.dispose()
