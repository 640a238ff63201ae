from datetime import datetime, timezone
from decimal import Decimal

import pytest
import requests

from marketplace_hub.integrations.marketplace import (
    ConnectorNotInitializedError, InventoryUpdate, PlatformProduct, ShopifyConnector,
)
from marketplace_hub.integrations.marketplace.connectors.shopify import (
    derive_order_status, next_page_info, parse_call_limit,
)


SHOP = "demo.myshopify.com"


@pytest.fixture()
def slept():
    return []


@pytest.fixture()
def shopify(fake_http, make_connection, slept):
    conn = make_connection("shopify", shop_domain=SHOP, access_token="shpat_test")
    return ShopifyConnector(session=fake_http, sleep=slept.append, backoff_ms=0).initialize(conn)


def _product(pid, price="19.99", qty=5, sku=None):
    variant = {"id": pid * 10, "sku": sku or f"SKU-{pid}", "inventory_quantity": qty, "inventory_item_id": pid * 100}
    if price is not None:
        variant["price"] = price
    return {"id": pid, "title": f"Product {pid}", "body_html": "", "vendor": "Acme", "variants": [variant]}


# ---------- 纯函数 ----------
def test_parse_call_limit():
    status = parse_call_limit("32/40")
    assert (status.remaining, status.limit) == (8, 40)
    assert parse_call_limit(None) is None
    assert parse_call_limit("garbage") is None


def test_next_page_info_reads_link_header():
    link = (f'<https://{SHOP}/admin/api/2024-01/products.json?limit=2&page_info=prev1>; rel="previous", '
            f'<https://{SHOP}/admin/api/2024-01/products.json?limit=2&page_info=next2>; rel="next"')
    assert next_page_info(link) == "next2"
    assert next_page_info(None) is None


@pytest.mark.parametrize(
    "raw, expected",
    [
        ({"cancelled_at": "2024-01-01", "closed_at": "2024-01-02"}, "cancelled"),
        ({"closed_at": "2024-01-02"}, "completed"),
        ({}, "pending"),
    ],
)
def test_derive_order_status(raw, expected):
    assert derive_order_status(raw) == expected


# ---------- products ----------
def test_get_products_parses_page_cursor_and_rate_limit(shopify, fake_http):
    fake_http.add(
        "GET", "/products.json",
        {"products": [_product(1), _product(2, price=None)]},
        headers={
            "X-Shopify-Shop-Api-Call-Limit": "32/40",
            "Link": f'<https://{SHOP}/admin/api/2024-01/products.json?limit=2&page_info=abc>; rel="next"',
        },
    )

    page = shopify.get_products(limit=2)

    assert page.ok
    assert [p.external_id for p in page] == ["1", "2"]
    assert page[0].price == Decimal("19.99")
    assert page[1].price is None
    assert page.next_cursor == "abc"

    rl = shopify.get_rate_limit_status()
    assert (rl.remaining, rl.limit) == (8, 40)

    call = fake_http.last()
    assert call["url"] == f"https://{SHOP}/admin/api/2024-01/products.json"
    assert call["params"] == {"limit": 2}
    assert call["headers"]["X-Shopify-Access-Token"] == "shpat_test"


def test_get_products_with_cursor_sends_only_page_info(shopify, fake_http):
    fake_http.add("GET", "/products.json", {"products": []})
    page = shopify.get_products(limit=500, cursor="abc")
    assert page.ok and page.next_cursor is None
    # 超过平台上限被夹到 250
    assert fake_http.last()["params"] == {"limit": 250, "page_info": "abc"}


def test_transform_multi_variant_product_sums_quantity():
    raw = {
        "id": 9,
        "title": "Shirt",
        "product_type": "Apparel",
        "options": [{"name": "Size", "values": ["S", "M"]}],
        "images": [{"src": "https://cdn/1.jpg"}],
        "variants": [
            {"id": 91, "sku": "S-S", "price": "10.00", "inventory_quantity": 2, "option1": "S"},
            {"id": 92, "sku": "S-M", "price": "12.00", "inventory_quantity": 3, "option1": "M"},
        ],
    }
    product = ShopifyConnector.transform_product(raw)
    assert product.quantity == 5
    assert product.sku == "S-S"
    assert product.price == Decimal("10.00")
    assert [v["external_id"] for v in product.variants] == ["91", "92"]
    assert product.attributes == {"Size": ["S", "M"]}
    assert product.images == ["https://cdn/1.jpg"]
    assert product.category == "Apparel"


def test_create_product_returns_new_id(shopify, fake_http):
    fake_http.add("POST", "/products.json", {"product": {"id": 555}}, status=201)

    new_id = shopify.create_product(PlatformProduct(title="New", sku="N-1", price=Decimal("5.00"), quantity=2))

    assert new_id == "555"
    body = fake_http.last()["json"]["product"]
    assert body["title"] == "New"
    assert body["variants"][0]["price"] == "5.00"
    assert body["status"] == "active"


# ---------- orders ----------
def test_transform_order_maps_money_and_shipping_lines():
    raw = {
        "id": 1001,
        "name": "#1001",
        "financial_status": "paid",
        "total_price": "113.00",
        "subtotal_price": "100.00",
        "total_tax": "8.00",
        "total_discounts": "5.00",
        "shipping_lines": [{"price": "6.00"}, {"price": "4.00"}],
        "currency": "AUD",
        "customer": {"id": 7, "email": "buyer@example.com"},
        "line_items": [{"id": 1, "sku": "A", "price": "50.00", "quantity": 2}],
        "created_at": "2024-03-01T10:00:00+11:00",
    }
    order = ShopifyConnector.transform_order(raw)
    assert order.external_id == "1001"
    assert order.order_number == "#1001"
    assert order.status == "pending"
    assert order.payment_status == "paid"
    assert order.shipping_cost == Decimal("10.00")
    assert order.is_reconciled()
    assert order.line_items[0]["total"] == Decimal("100.00")
    assert order.customer["email"] == "buyer@example.com"


def test_get_orders_first_page_filters_by_since(shopify, fake_http):
    fake_http.add("GET", "/orders.json", {"orders": [{"id": 1, "closed_at": "2024-01-01"}]})
    page = shopify.get_orders(since=datetime(2024, 1, 1, tzinfo=timezone.utc), limit=10)

    assert [o.status for o in page] == ["completed"]
    params = fake_http.last()["params"]
    assert params["status"] == "any"
    assert params["created_at_min"].startswith("2024-01-01T00:00:00")


def test_fulfill_order_uses_first_fulfillment_order(shopify, fake_http):
    fake_http.add("GET", "/orders/1001/fulfillment_orders.json", {"fulfillment_orders": [{"id": 77}]})
    fake_http.add("POST", "/fulfillments.json", {"fulfillment": {"id": 1}}, status=201)

    ok = shopify.fulfill_order("1001", {"tracking_number": "TRK1", "carrier": "AusPost"})

    assert ok is True
    body = fake_http.last()["json"]["fulfillment"]
    assert body["line_items_by_fulfillment_order"] == [{"fulfillment_order_id": 77}]
    assert body["tracking_info"]["number"] == "TRK1"
    assert body["tracking_info"]["company"] == "AusPost"


def test_fulfill_order_without_fulfillment_order_fails(shopify, fake_http):
    fake_http.add("GET", "/fulfillment_orders.json", {"fulfillment_orders": []})
    assert shopify.fulfill_order("1001", {}) is False
    assert "no fulfillment order" in shopify.get_last_error()
    assert not fake_http.calls_to("/fulfillments.json")


# ---------- inventory ----------
def test_update_inventory_set_resolves_item_and_location(shopify, fake_http):
    fake_http.add("GET", "/variants/5.json", {"variant": {"id": 5, "inventory_item_id": 500}})
    fake_http.add("GET", "/locations.json", {"locations": [{"id": 3}, {"id": 4}]})
    fake_http.add("POST", "/inventory_levels/set.json", {"inventory_level": {"available": 12}})

    ok = shopify.update_inventory(InventoryUpdate(sku="A", quantity=12, external_variant_id="5"))

    assert ok is True
    assert fake_http.last()["json"] == {"location_id": 3, "inventory_item_id": 500, "available": 12}


def test_update_inventory_adjust_uses_connection_location(fake_http, make_connection):
    conn = make_connection("shopify", shop_domain=SHOP, access_token="t", settings={"location_id": 8})
    connector = ShopifyConnector(session=fake_http).initialize(conn)
    fake_http.add("GET", "/variants/5.json", {"variant": {"inventory_item_id": 500}})
    fake_http.add("POST", "/inventory_levels/adjust.json", {"inventory_level": {}})

    ok = connector.update_inventory(InventoryUpdate(sku="A", quantity=-2, external_variant_id="5",
                                                    adjustment_type="adjust"))

    assert ok is True
    assert not fake_http.calls_to("/locations.json")
    assert fake_http.last()["json"]["available_adjustment"] == -2


def test_update_inventory_needs_variant_id(shopify, fake_http):
    assert shopify.update_inventory(InventoryUpdate(sku="A", quantity=1)) is False
    assert "external_variant_id" in shopify.get_last_error()
    assert fake_http.calls == []


def test_bulk_update_inventory_isolates_failures(shopify, fake_http):
    fake_http.add("GET", "/variants/1.json", {"variant": {"inventory_item_id": 10}})
    fake_http.add("GET", "/locations.json", {"locations": [{"id": 3}]}, repeat=True)
    fake_http.add("POST", "/inventory_levels/set.json", {}, repeat=True)
    fake_http.add("GET", "/variants/2.json", {"errors": "Not Found"}, status=404)

    results = shopify.bulk_update_inventory([
        InventoryUpdate(sku="A", quantity=1, external_variant_id="1"),
        InventoryUpdate(sku="B", quantity=1, external_variant_id="2"),
    ])
    assert results == {"A": True, "B": False}


# ---------- 失败路径 ----------
def test_network_call_before_initialize_raises(fake_http):
    with pytest.raises(ConnectorNotInitializedError):
        ShopifyConnector(session=fake_http).get_products()
    assert fake_http.calls == []


def test_missing_shop_domain_is_reported_without_http(fake_http, make_connection):
    connector = ShopifyConnector(session=fake_http).initialize(make_connection("shopify", access_token="t"))
    page = connector.get_products()
    assert not page.ok
    assert "shop_domain" in page.error
    assert connector.test_connection() is False
    assert fake_http.calls == []


def test_missing_access_token_is_a_config_error(fake_http, make_connection):
    connector = ShopifyConnector(session=fake_http).initialize(make_connection("shopify", shop_domain=SHOP))
    assert connector.test_connection() is False
    assert "access token" in connector.get_last_error()


def test_429_is_retried_honouring_retry_after(shopify, fake_http, slept):
    fake_http.add("GET", "/shop.json", {"errors": "throttled"}, status=429, headers={"Retry-After": "2"})
    fake_http.add("GET", "/shop.json", {"shop": {"id": 1}}, headers={"X-Shopify-Shop-Api-Call-Limit": "1/40"})

    assert shopify.test_connection() is True
    assert slept == [2.0]
    assert shopify.get_rate_limit_status().remaining == 39


def test_get_retries_network_errors_then_gives_up(shopify, fake_http, slept):
    fake_http.add("GET", "/shop.json", error=requests.ConnectionError("boom"), repeat=True)

    assert shopify.test_connection() is False
    # 默认重试 2 次：共 3 次请求
    assert len(fake_http.calls) == 3
    assert len(slept) == 2
    assert "request error" in shopify.get_last_error()


def test_post_5xx_is_not_retried(shopify, fake_http, slept):
    fake_http.add("POST", "/products.json", {"errors": "oops"}, status=502, repeat=True)

    assert shopify.create_product(PlatformProduct(title="x", price=Decimal("1"))) is None
    assert len(fake_http.calls) == 1
    assert slept == []
    assert shopify.get_last_error().startswith("HTTP 502")


def test_401_is_not_refreshed_for_offline_tokens(shopify, fake_http):
    fake_http.add("GET", "/shop.json", {"errors": "Invalid API key"}, status=401, repeat=True)
    assert shopify.test_connection() is False
    assert len(fake_http.calls) == 1
    assert shopify.tokens_refreshed is False


def test_non_json_body_is_a_failure(shopify, fake_http):
    fake_http.add("GET", "/shop.json", text="<html>maintenance</html>")
    assert shopify.test_connection() is False
    assert "non-JSON" in shopify.get_last_error()
