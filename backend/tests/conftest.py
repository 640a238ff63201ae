"""
共享 fixture：
  - fake_http: 注入 connector 的假 requests.Session，按 (method, url 片段) 返回真的 requests.Response
  - db_session: 内存 SQLite（StaticPool，TestClient 的线程池也能看到同一个库）
  - make_connection: 构造 StoreMarketplace（可选落库）
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import pytest
import requests
from requests.structures import CaseInsensitiveDict
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from marketplace_hub.core.config import settings
from marketplace_hub.db.base import Base
from marketplace_hub.db.model.marketplace import CONNECTION_STATUS_ACTIVE, StoreMarketplace


def make_response(status: int = 200, body: Any = None, headers: Optional[Dict[str, str]] = None,
                  text: Optional[str] = None, url: str = "") -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    if body is not None:
        resp._content = json.dumps(body).encode("utf-8")
    else:
        resp._content = (text or "").encode("utf-8")
    resp.headers = CaseInsensitiveDict(headers or {})
    resp.encoding = "utf-8"
    resp.url = url
    return resp


class FakeHttp:
    """
    按注册顺序匹配：第一个 method 相同且 url 包含 fragment 的路由生效。
    repeat=False 的路由用一次就移除（同一个 url 可以排队多个响应）。
    """

    def __init__(self) -> None:
        self.routes: List[Dict[str, Any]] = []
        self.calls: List[Dict[str, Any]] = []

    def add(self, method: str, fragment: str, body: Any = None, *, status: int = 200,
            headers: Optional[Dict[str, str]] = None, text: Optional[str] = None,
            error: Optional[Exception] = None, repeat: bool = False) -> "FakeHttp":
        self.routes.append({
            "method": method.upper(), "fragment": fragment, "body": body, "status": status,
            "headers": headers, "text": text, "error": error, "repeat": repeat,
        })
        return self

    def request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        self.calls.append({"method": method.upper(), "url": url, **kwargs})
        for route in self.routes:
            if route["method"] == method.upper() and route["fragment"] in url:
                if not route["repeat"]:
                    self.routes.remove(route)
                if route["error"] is not None:
                    raise route["error"]
                return make_response(route["status"], route["body"], route["headers"], route["text"], url)
        raise AssertionError(f"unexpected request: {method} {url}")

    # ---- 断言辅助 ----
    def calls_to(self, fragment: str, method: Optional[str] = None) -> List[Dict[str, Any]]:
        return [c for c in self.calls
                if fragment in c["url"] and (method is None or c["method"] == method.upper())]

    def last(self) -> Dict[str, Any]:
        return self.calls[-1]


@pytest.fixture()
def fake_http() -> FakeHttp:
    return FakeHttp()


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    # 测试里不连 Redis、不开出站限流
    monkeypatch.setattr(settings, "REDIS_URL", None)
    monkeypatch.setattr(settings, "MARKETPLACE_THROTTLE_ENABLED", False)
    monkeypatch.setattr(settings, "SYNC_TASKS_INLINE", True)


@pytest.fixture()
def db_engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def db_session(db_engine):
    Session = sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False, future=True)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_connection():
    """
    make_connection("shopify", shop_domain="demo.myshopify.com", access_token="tok")
    传 db= 则落库并返回已提交的对象；否则返回带 id 的临时对象。
    """
    counter = {"id": 0}

    def _make(platform: str = "shopify", *, db=None, **fields: Any) -> StoreMarketplace:
        values: Dict[str, Any] = {
            "store_id": 1,
            "platform": platform,
            "status": CONNECTION_STATUS_ACTIVE,
            "credentials": {},
            "settings": {},
        }
        values.update(fields)
        conn = StoreMarketplace(**values)
        if db is not None:
            db.add(conn)
            db.commit()
            return conn
        if conn.id is None:
            counter["id"] += 1
            conn.id = counter["id"]
        return conn

    return _make
