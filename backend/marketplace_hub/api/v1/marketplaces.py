# marketplace 连接的运维接口：平台能力 / 探活 / 限流观测 / 手动触发同步

from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from marketplace_hub.db.model.marketplace import StoreMarketplace
from marketplace_hub.db.session import get_db
from marketplace_hub.integrations.marketplace import DEFAULT_CONNECTORS, Platform, PlatformConnectorManager
from marketplace_hub.orchestration.marketplace_sync.sync_task import dispatch
from marketplace_hub.repository.marketplace_repo import SqlMarketplaceStore, get_connection

router = APIRouter(prefix="/marketplaces", tags=["marketplaces"])


class SyncProductsRequest(BaseModel):
    limit: Optional[int] = Field(default=None, ge=1, le=250)
    cursor: Optional[str] = None


class SyncOrdersRequest(BaseModel):
    since: Optional[datetime] = None
    limit: Optional[int] = Field(default=None, ge=1, le=250)
    cursor: Optional[str] = None


def _active_connection_or_error(db: Session, connection_id: int) -> StoreMarketplace:
    connection = get_connection(db, connection_id)
    if connection is None:
        raise HTTPException(status_code=404, detail=f"marketplace connection {connection_id} not found")
    if not connection.is_active:
        raise HTTPException(status_code=409, detail=f"marketplace connection {connection_id} is {connection.status}")
    return connection


@router.get("/platforms")
def list_platforms() -> List[Dict[str, Any]]:
    return [{**p.to_dict(), "has_connector": p in DEFAULT_CONNECTORS} for p in Platform]


@router.post("/{connection_id}/test")
def test_marketplace_connection(connection_id: int = Path(..., ge=1), db: Session = Depends(get_db)):
    _active_connection_or_error(db, connection_id)
    return dispatch("test_connection", connection_id, db=db)


@router.get("/{connection_id}/rate-limit")
def rate_limit(connection_id: int = Path(..., ge=1), db: Session = Depends(get_db)):
    """
    限流三元组只在一次真实调用之后才有意义：
    这里做一次探活，返回探活响应里观测到的 remaining / limit / reset_at。
    """
    connection = _active_connection_or_error(db, connection_id)
    manager = PlatformConnectorManager(SqlMarketplaceStore(db))
    return manager.check_connection(connection)


@router.post("/{connection_id}/sync/products")
def sync_products(
    connection_id: int = Path(..., ge=1),
    body: Optional[SyncProductsRequest] = None,
    db: Session = Depends(get_db),
):
    _active_connection_or_error(db, connection_id)
    body = body or SyncProductsRequest()
    return dispatch("sync_products", connection_id, db=db, limit=body.limit, cursor=body.cursor)


@router.post("/{connection_id}/sync/orders")
def sync_orders(
    connection_id: int = Path(..., ge=1),
    body: Optional[SyncOrdersRequest] = None,
    db: Session = Depends(get_db),
):
    _active_connection_or_error(db, connection_id)
    body = body or SyncOrdersRequest()
    since = body.since.isoformat() if body.since else None
    return dispatch("sync_orders", connection_id, db=db, since=since, limit=body.limit, cursor=body.cursor)
