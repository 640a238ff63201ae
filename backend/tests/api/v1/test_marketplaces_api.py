from decimal import Decimal

import pytest
from sqlalchemy import select

from marketplace_hub.core.config import settings
from marketplace_hub.db.model.marketplace import PlatformListing
from marketplace_hub.integrations.marketplace import DEFAULT_CONNECTORS, Platform, ShopifyConnector


BASE = f"{settings.API_PREFIX}/marketplaces"
SHOP = "demo.myshopify.com"


@pytest.fixture()
def shopify_over_fake_http(monkeypatch, fake_http):
    # Manager 每次从 DEFAULT_CONNECTORS 拷贝注册表，这里换成走 fake_http 的工厂
    monkeypatch.setitem(DEFAULT_CONNECTORS, Platform.SHOPIFY,
                        lambda session=None: ShopifyConnector(session=fake_http, sleep=lambda s: None))
    return fake_http


@pytest.fixture()
def shop_conn(db_session, make_connection):
    return make_connection("shopify", db=db_session, shop_domain=SHOP, access_token="shpat_test")


def test_health(client):
    assert client.get(f"{settings.API_PREFIX}/health").json() == {"status": "ok"}


def test_list_platforms(client):
    resp = client.get(f"{BASE}/platforms")
    assert resp.status_code == 200
    by_name = {p["platform"]: p for p in resp.json()}
    assert set(by_name) == {p.value for p in Platform}
    assert by_name["shopify"]["has_connector"] is True
    assert by_name["woocommerce"]["has_connector"] is True
    assert by_name["paperform"]["has_connector"] is False
    assert by_name["paperform"]["supports_inventory_sync"] is False
    assert by_name["walmart"]["requires_oauth"] is True


def test_unknown_connection_is_404(client):
    assert client.post(f"{BASE}/999/test").status_code == 404
    assert client.post(f"{BASE}/999/sync/products").status_code == 404


def test_inactive_connection_is_409(client, db_session, make_connection):
    conn = make_connection("shopify", db=db_session, shop_domain=SHOP, status="inactive")
    resp = client.post(f"{BASE}/{conn.id}/sync/orders")
    assert resp.status_code == 409
    assert "inactive" in resp.json()["detail"]


def test_sync_products_inline(client, db_session, shop_conn, shopify_over_fake_http):
    shopify_over_fake_http.add("GET", "/products.json", {"products": [
        {"id": 1, "title": "Lamp", "variants": [{"id": 10, "sku": "L-1", "price": "19.99", "inventory_quantity": 3}]},
        {"id": 2, "title": "No price", "variants": [{"id": 20, "sku": "L-2"}]},
    ]}, headers={"X-Shopify-Shop-Api-Call-Limit": "10/100"})

    resp = client.post(f"{BASE}/{shop_conn.id}/sync/products", json={"limit": 10})

    assert resp.status_code == 200
    body = resp.json()
    assert body["mode"] == "inline"
    assert body["result"]["synced"] == 1
    assert body["result"]["errors"] == 1
    assert body["result"]["error"] is None
    assert shopify_over_fake_http.last()["params"] == {"limit": 10}

    db_session.expire_all()
    listing = db_session.execute(select(PlatformListing)).scalar_one()
    assert listing.external_listing_id == "1"
    assert listing.platform_price == Decimal("19.99")


def test_sync_products_rejects_out_of_range_limit(client, shop_conn):
    assert client.post(f"{BASE}/{shop_conn.id}/sync/products", json={"limit": 0}).status_code == 422
    assert client.post(f"{BASE}/{shop_conn.id}/sync/products", json={"limit": 251}).status_code == 422


def test_sync_orders_passes_since(client, shop_conn, shopify_over_fake_http):
    shopify_over_fake_http.add("GET", "/orders.json", {"orders": []})

    resp = client.post(f"{BASE}/{shop_conn.id}/sync/orders", json={"since": "2024-01-01T00:00:00Z"})

    assert resp.status_code == 200
    assert resp.json()["result"]["synced"] == 0
    params = shopify_over_fake_http.last()["params"]
    assert params["created_at_min"] == "2024-01-01T00:00:00+00:00"
    assert params["status"] == "any"


def test_test_connection_and_rate_limit(client, shop_conn, shopify_over_fake_http):
    shopify_over_fake_http.add("GET", "/shop.json", {"shop": {"id": 1}},
                               headers={"X-Shopify-Shop-Api-Call-Limit": "4/40"}, repeat=True)

    tested = client.post(f"{BASE}/{shop_conn.id}/test").json()
    assert tested["mode"] == "inline"
    assert tested["result"]["ok"] is True
    assert tested["result"]["platform"] == "shopify"

    rate = client.get(f"{BASE}/{shop_conn.id}/rate-limit").json()
    assert rate["ok"] is True
    assert rate["rate_limit"]["remaining"] == 36
    assert rate["rate_limit"]["limit"] == 40


def test_untrusted_origin_is_blocked(client, shop_conn):
    resp = client.post(f"{BASE}/{shop_conn.id}/test", headers={"Origin": "https://evil.example"})
    assert resp.status_code == 403
    assert resp.json() == {"detail": "Bad Origin"}
