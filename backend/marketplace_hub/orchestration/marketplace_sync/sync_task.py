from __future__ import annotations
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

from celery import shared_task
from sqlalchemy.orm import Session

from marketplace_hub.core.config import settings
from marketplace_hub.db.session import SessionLocal
from marketplace_hub.integrations.marketplace import PlatformConnectorManager, SyncReport
from marketplace_hub.repository.marketplace_repo import SqlMarketplaceStore, get_connection
from marketplace_hub.utils.clock import ensure_utc


logger = logging.getLogger(__name__)


"""
  调试开关：True 时 API 触发的任务在当前进程内同步执行。
"""
def _inline_tasks_enabled() -> bool:
    return bool(getattr(settings, "SYNC_TASKS_INLINE", True))


def _parse_since(since: Optional[str]) -> Optional[datetime]:
    # Celery 走 json 序列化，时间以 ISO 字符串传入
    if not since:
        return None
    return ensure_utc(datetime.fromisoformat(since.replace("Z", "+00:00")))


@contextmanager
def _session(db: Optional[Session]) -> Iterator[Session]:
    # 调用方给了会话（API 请求内）就复用，不负责关闭
    if db is not None:
        yield db
        return
    own = SessionLocal()
    try:
        yield own
    finally:
        own.close()



# ========================== Celery 入口 ==========================
@shared_task(name="marketplace_hub.orchestration.marketplace_sync.sync_products")
def sync_products(connection_id: int, limit: Optional[int] = None, cursor: Optional[str] = None) -> Dict[str, Any]:
    return sync_products_inline(connection_id, limit=limit, cursor=cursor)


@shared_task(name="marketplace_hub.orchestration.marketplace_sync.sync_orders")
def sync_orders(connection_id: int, since: Optional[str] = None, limit: Optional[int] = None,
                cursor: Optional[str] = None) -> Dict[str, Any]:
    return sync_orders_inline(connection_id, since=since, limit=limit, cursor=cursor)


@shared_task(name="marketplace_hub.orchestration.marketplace_sync.test_connection")
def test_connection(connection_id: int) -> Dict[str, Any]:
    return test_connection_inline(connection_id)



# ========================== 进程内执行 ==========================
"""
  一页商品同步：
    1) 按 id 取连接（不存在 → 被拒的报告）
    2) Manager 负责 active 校验 / 加锁 / token 刷新 / 逐条 upsert / record_sync
"""
def sync_products_inline(connection_id: int, *, limit: Optional[int] = None, cursor: Optional[str] = None,
                         db: Optional[Session] = None, manager_kwargs: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    logger.info("marketplace_sync.products start connection=%s cursor=%s", connection_id, cursor)
    with _session(db) as s:
        connection = get_connection(s, connection_id)
        if connection is None:
            return SyncReport.rejected(f"connection {connection_id} not found").to_dict()

        manager = PlatformConnectorManager(SqlMarketplaceStore(s), **(manager_kwargs or {}))
        report = manager.sync_products(connection, limit=limit, cursor=cursor)

    logger.info("marketplace_sync.products end connection=%s synced=%s errors=%s error=%s",
                connection_id, report.synced, report.errors, report.error)
    return report.to_dict()


def sync_orders_inline(connection_id: int, *, since: Optional[str] = None, limit: Optional[int] = None,
                       cursor: Optional[str] = None, db: Optional[Session] = None,
                       manager_kwargs: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    logger.info("marketplace_sync.orders start connection=%s since=%s cursor=%s", connection_id, since, cursor)
    with _session(db) as s:
        connection = get_connection(s, connection_id)
        if connection is None:
            return SyncReport.rejected(f"connection {connection_id} not found").to_dict()

        manager = PlatformConnectorManager(SqlMarketplaceStore(s), **(manager_kwargs or {}))
        report = manager.sync_orders(connection, since=_parse_since(since), limit=limit, cursor=cursor)

    logger.info("marketplace_sync.orders end connection=%s synced=%s errors=%s error=%s",
                connection_id, report.synced, report.errors, report.error)
    return report.to_dict()


def test_connection_inline(connection_id: int, *, db: Optional[Session] = None,
                           manager_kwargs: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    with _session(db) as s:
        connection = get_connection(s, connection_id)
        if connection is None:
            return {"connection_id": connection_id, "ok": False, "error": "connection not found", "rate_limit": None}

        manager = PlatformConnectorManager(SqlMarketplaceStore(s), **(manager_kwargs or {}))
        return {**manager.check_connection(connection), "platform": connection.platform}



"""
  API 用的统一投递入口：inline 时直接在请求会话里跑完并返回结果，否则投递 Celery 返回 task_id
"""
_INLINE_RUNNERS = {
    "sync_products": sync_products_inline,
    "sync_orders": sync_orders_inline,
    "test_connection": test_connection_inline,
}

_TASKS = {
    "sync_products": sync_products,
    "sync_orders": sync_orders,
    "test_connection": test_connection,
}


def dispatch(task_name: str, connection_id: int, *, db: Optional[Session] = None, **kwargs: Any) -> Dict[str, Any]:
    if task_name not in _TASKS:
        raise ValueError(f"unknown marketplace task: {task_name}")

    if _inline_tasks_enabled():
        return {"mode": "inline", "result": _INLINE_RUNNERS[task_name](connection_id, db=db, **kwargs)}

    async_result = _TASKS[task_name].delay(connection_id, **kwargs)
    logger.info("marketplace_sync.dispatched task=%s connection=%s task_id=%s",
                task_name, connection_id, async_result.id)
    return {"mode": "celery", "task_id": async_result.id}
