# marketplace 连接 / listing 镜像 / 订单镜像 的数据库读写

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from marketplace_hub.db.model.marketplace import (
    CONNECTION_STATUS_ACTIVE,
    CONNECTION_STATUS_INACTIVE,
    PlatformListing,
    PlatformOrderRecord,
    StoreMarketplace,
)

logger = logging.getLogger(__name__)


'''
  upsert 时允许覆盖的字段白名单（冲突键本身不更新）
'''
LISTING_FIELDS = [
    "title",
    "sku",
    "platform_price",
    "platform_quantity",
    "platform_data",
    "status",
    "last_synced_at",
]

ORDER_FIELDS = [
    "order_number",
    "status",
    "fulfillment_status",
    "payment_status",
    "total",
    "subtotal",
    "shipping_cost",
    "tax",
    "discount",
    "currency",
    "customer_data",
    "shipping_address",
    "billing_address",
    "line_items",
    "platform_data",
    "ordered_at",
    "last_synced_at",
]


# ---------- Connections ----------
def get_connection(db: Session, connection_id: int) -> Optional[StoreMarketplace]:
    return db.get(StoreMarketplace, connection_id)


def list_connections(
    db: Session,
    *,
    platform: Optional[str] = None,
    shop_domain: Optional[str] = None,
    only_active: bool = False,
) -> List[StoreMarketplace]:
    stmt = select(StoreMarketplace).order_by(StoreMarketplace.id)
    if platform:
        stmt = stmt.where(StoreMarketplace.platform == platform)
    if shop_domain:
        stmt = stmt.where(func.lower(StoreMarketplace.shop_domain) == shop_domain.strip().lower())
    if only_active:
        stmt = stmt.where(StoreMarketplace.status == CONNECTION_STATUS_ACTIVE)
    return list(db.execute(stmt).scalars())


def deactivate_by_shop_domain(db: Session, platform: str, shop_domain: str) -> int:
    """平台撤销授权（shop/redact、app/uninstalled）：把该店铺在该平台的所有连接置为 inactive。"""
    stmt = (
        update(StoreMarketplace)
        .where(
            StoreMarketplace.platform == platform,
            func.lower(StoreMarketplace.shop_domain) == shop_domain.strip().lower(),
            StoreMarketplace.status != CONNECTION_STATUS_INACTIVE,
        )
        .values(status=CONNECTION_STATUS_INACTIVE, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    try:
        res = db.execute(stmt)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("marketplace.repo.deactivate_failed platform=%s shop=%s", platform, shop_domain)
        raise
    return int(res.rowcount or 0)


# ---------- Mirrors ----------
def upsert_listing(db: Session, connection_id: int, external_id: str, values: Dict[str, Any]) -> None:
    row = {"store_marketplace_id": connection_id, "external_listing_id": external_id, **values}
    _execute_upsert(
        db,
        PlatformListing,
        row,
        conflict_keys=["store_marketplace_id", "external_listing_id"],
        update_columns=LISTING_FIELDS,
        extra_updates={"updated_at": func.now()},
    )


def upsert_platform_order(db: Session, connection_id: int, external_id: str, values: Dict[str, Any]) -> None:
    row = {"store_marketplace_id": connection_id, "external_order_id": external_id, **values}
    _execute_upsert(
        db,
        PlatformOrderRecord,
        row,
        conflict_keys=["store_marketplace_id", "external_order_id"],
        update_columns=ORDER_FIELDS,
        extra_updates={"updated_at": func.now()},
    )


def _insert_for(db: Session, model):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    return None


def _execute_upsert(
    db: Session,
    model,
    row: Dict[str, Any],
    *,
    conflict_keys: List[str],
    update_columns: List[str],
    extra_updates: Optional[Dict[str, Any]] = None,
) -> None:
    # 只更新 row 里真的带了的列，且不更新冲突键
    update_cols = [c for c in update_columns if c in row and c not in conflict_keys]

    stmt = _insert_for(db, model)
    if stmt is None:
        _orm_upsert(db, model, row, conflict_keys=conflict_keys, update_columns=update_cols)
        return

    stmt = stmt.values(row)
    # 冲突时的 SET 子句：用 excluded.xxx 覆盖旧值
    updates = {col: getattr(stmt.excluded, col) for col in update_cols}
    if extra_updates:
        updates.update(extra_updates)

    upsert_stmt = stmt.on_conflict_do_update(index_elements=conflict_keys, set_=updates)
    db.execute(upsert_stmt)


def _orm_upsert(db: Session, model, row: Dict[str, Any], *, conflict_keys: List[str], update_columns: List[str]) -> None:
    """没有 ON CONFLICT 的方言：先查再写（同一连接的 sync 已经被锁串行化）。"""
    filters = [getattr(model, k) == row[k] for k in conflict_keys]
    existing = db.execute(select(model).where(*filters)).scalar_one_or_none()
    if existing is None:
        db.add(model(**row))
    else:
        for col in update_columns:
            setattr(existing, col, row[col])
    db.flush()



"""
  Manager 用的持久化端口（SQL 实现）
    - 每条记录单独提交：某条失败只回滚它自己，不影响已写入的其它记录
"""
class SqlMarketplaceStore:

    def __init__(self, db: Session):
        self.db = db

    def upsert_listing(self, connection: StoreMarketplace, external_id: str, values: Dict[str, Any]) -> None:
        try:
            upsert_listing(self.db, connection.id, external_id, values)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def upsert_order(self, connection: StoreMarketplace, external_id: str, values: Dict[str, Any]) -> None:
        try:
            upsert_platform_order(self.db, connection.id, external_id, values)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def save_connection(self, connection: StoreMarketplace) -> None:
        try:
            self.db.add(connection)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
