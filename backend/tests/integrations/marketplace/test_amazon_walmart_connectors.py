import base64
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from marketplace_hub.integrations.marketplace import (
    AmazonConnector, InventoryUpdate, PlatformProduct, WalmartConnector,
)
from marketplace_hub.integrations.marketplace.connectors.amazon import parse_rate_limit
from marketplace_hub.integrations.marketplace.connectors.walmart import derive_order_status
from marketplace_hub.utils.clock import ensure_utc, now_utc


# ========================== Amazon ==========================
@pytest.fixture()
def amazon_conn(make_connection):
    return make_connection(
        "amazon",
        external_store_id="SELLER1",
        access_token="Atza|old",
        refresh_token="Atzr|r1",
        token_expires_at=now_utc() + timedelta(hours=1),
        credentials={"client_id": "cid", "client_secret": "csecret", "marketplace_ids": ["A39IBJ37TRP1C6"]},
    )


@pytest.fixture()
def amazon(fake_http, amazon_conn):
    return AmazonConnector(session=fake_http, sleep=lambda s: None).initialize(amazon_conn)


def test_amazon_rate_limit_header_is_a_rate():
    # 只有速率，没有剩余次数
    assert (parse_rate_limit("0.0167").limit, parse_rate_limit("0.0167").remaining) == (1, None)
    assert parse_rate_limit("2.5").limit == 3
    assert parse_rate_limit(None) is None


def test_amazon_throttled_response_reports_zero_remaining(amazon, fake_http):
    fake_http.add("GET", "/sellers/v1/marketplaceParticipations", {"errors": [{"code": "QuotaExceeded"}]},
                  status=429, headers={"x-amzn-RateLimit-Limit": "0.0167", "Retry-After": "0"})
    fake_http.add("GET", "/sellers/v1/marketplaceParticipations", {"payload": [{"marketplace": {"id": "X"}}]},
                  headers={"x-amzn-RateLimit-Limit": "0.0167"})
    amazon.max_retries = 0

    assert amazon.test_connection() is False
    assert amazon.get_rate_limit_status().remaining == 0

    assert amazon.test_connection() is True
    assert amazon.get_rate_limit_status().remaining is None


def test_amazon_refreshes_expired_lwa_token(amazon, amazon_conn, fake_http):
    amazon_conn.token_expires_at = now_utc() - timedelta(minutes=1)
    fake_http.add("POST", "/auth/o2/token", {"access_token": "Atza|new", "expires_in": 3600,
                                              "refresh_token": "Atzr|r2"})

    assert amazon.refresh_tokens_if_needed() is True

    assert amazon_conn.access_token == "Atza|new"
    assert amazon_conn.refresh_token == "Atzr|r2"
    assert ensure_utc(amazon_conn.token_expires_at) > now_utc() + timedelta(minutes=50)
    assert amazon.tokens_refreshed is True
    call = fake_http.last()
    assert call["url"] == "https://api.amazon.com/auth/o2/token"
    assert call["data"]["grant_type"] == "refresh_token"
    assert "x-amz-access-token" not in call["headers"]


def test_amazon_valid_token_is_not_refreshed(amazon, fake_http):
    assert amazon.refresh_tokens_if_needed() is True
    assert fake_http.calls == []


def test_amazon_refresh_without_client_credentials_fails(fake_http, make_connection):
    conn = make_connection("amazon", external_store_id="S", access_token=None, refresh_token="r")
    connector = AmazonConnector(session=fake_http).initialize(conn)
    assert connector.refresh_tokens_if_needed() is False
    assert "LWA client credentials" in connector.get_last_error()


def test_amazon_401_refreshes_once_and_replays(amazon, amazon_conn, fake_http):
    fake_http.add("GET", "/orders/v0/orders", {"errors": [{"code": "Unauthorized"}]}, status=401)
    fake_http.add("POST", "/auth/o2/token", {"access_token": "Atza|new", "expires_in": 3600})
    fake_http.add("GET", "/orders/v0/orders", {"payload": {"Orders": [], "NextToken": None}})

    page = amazon.get_orders(limit=10)

    assert page.ok and list(page) == []
    assert len(fake_http.calls) == 3
    assert fake_http.last()["headers"]["x-amz-access-token"] == "Atza|new"
    assert amazon.tokens_refreshed is True


def test_amazon_get_products_uses_seller_listing_search(amazon, fake_http):
    fake_http.add("GET", "/listings/2021-08-01/items/SELLER1", {
        "items": [{
            "sku": "SKU-1",
            "summaries": [{"itemName": "Kettle", "status": ["BUYABLE", "DISCOVERABLE"], "asin": "B01",
                           "productType": "KITCHEN", "mainImage": {"link": "https://m/1.jpg"}}],
            "offers": [{"price": {"amount": "29.95"}}],
            "fulfillmentAvailability": [{"fulfillmentChannelCode": "DEFAULT", "quantity": 4}],
            "attributes": {"brand": [{"value": "Breville"}]},
        }],
        "pagination": {"nextToken": "tok2"},
    }, headers={"x-amzn-RateLimit-Limit": "5.0"})

    page = amazon.get_products(limit=250)

    assert page.next_cursor == "tok2"
    product = page[0]
    assert product.external_id == "SKU-1"
    assert product.price == Decimal("29.95")
    assert product.quantity == 4
    assert product.brand == "Breville"
    assert product.is_active
    assert product.metadata["asin"] == "B01"
    params = fake_http.last()["params"]
    assert params["pageSize"] == 20
    assert params["marketplaceIds"] == "A39IBJ37TRP1C6"
    assert amazon.get_rate_limit_status().limit == 5


def test_amazon_listing_requires_seller_id(fake_http, make_connection):
    conn = make_connection("amazon", access_token="t")
    page = AmazonConnector(session=fake_http).initialize(conn).get_products()
    assert not page.ok and "seller id" in page.error
    assert fake_http.calls == []


def test_amazon_create_listing_reports_invalid_submission(amazon, fake_http):
    fake_http.add("PUT", "/items/SELLER1/SKU-9", {"status": "INVALID", "issues": [{"message": "missing brand"}]})

    new_id = amazon.create_product(PlatformProduct(title="X", sku="SKU-9", price=Decimal("5.00")))

    assert new_id is None
    assert "missing brand" in amazon.get_last_error()
    body = fake_http.last()["json"]
    assert body["attributes"]["item_name"][0]["value"] == "X"
    assert body["attributes"]["purchasable_offer"][0]["our_price"][0]["schedule"][0]["value_with_tax"] == 5.0


def test_amazon_get_order_splits_money_from_items(amazon, fake_http):
    fake_http.add("GET", "/orderItems", {"payload": {"OrderItems": [{
        "OrderItemId": "i1", "ASIN": "B01", "SellerSKU": "SKU-1", "QuantityOrdered": 2,
        "ItemPrice": {"Amount": "40.00"}, "ItemTax": {"Amount": "4.00"}, "ShippingPrice": {"Amount": "5.00"},
    }]}})
    fake_http.add("GET", "/orders/v0/orders/111-222", {"payload": {
        "AmazonOrderId": "111-222", "OrderStatus": "Unshipped", "PurchaseDate": "2024-02-01T00:00:00Z",
        "OrderTotal": {"Amount": "49.00", "CurrencyCode": "AUD"}, "FulfillmentChannel": "MFN",
    }})

    order = amazon.get_order("111-222")

    assert order.status == "processing"
    assert order.payment_status == "paid"
    assert order.currency == "AUD"
    assert (order.subtotal, order.shipping_cost, order.tax) == (Decimal("40.00"), Decimal("5.00"), Decimal("4.00"))
    assert order.is_reconciled()
    assert order.line_items[0]["price"] == Decimal("20.00")
    assert order.metadata["fulfillment_channel"] == "merchant_fulfilled"


def test_amazon_order_header_without_items_keeps_total_as_subtotal():
    order = AmazonConnector.transform_order({"AmazonOrderId": "1", "OrderStatus": "Canceled",
                                             "OrderTotal": {"Amount": "12.50"}})
    assert order.status == "cancelled"
    assert order.subtotal == order.total == Decimal("12.50")
    assert order.line_items == []


def test_amazon_adjust_inventory_reads_current_quantity(amazon, fake_http):
    fake_http.add("GET", "/items/SELLER1/SKU-1", {"sku": "SKU-1", "fulfillmentAvailability": [{"quantity": 10}]})
    fake_http.add("PATCH", "/items/SELLER1/SKU-1", {"status": "ACCEPTED"})

    ok = amazon.update_inventory(InventoryUpdate(sku="SKU-1", quantity=-3, adjustment_type="adjust"))

    assert ok is True
    patch = fake_http.last()["json"]["patches"][0]
    assert patch["path"] == "/attributes/fulfillment_availability"
    assert patch["value"][0]["quantity"] == 7


# ========================== Walmart ==========================
@pytest.fixture()
def walmart_conn(make_connection):
    return make_connection("walmart", credentials={"client_id": "wid", "client_secret": "wsecret"})


@pytest.fixture()
def walmart(fake_http, walmart_conn):
    return WalmartConnector(session=fake_http, sleep=lambda s: None).initialize(walmart_conn)


@pytest.mark.parametrize(
    "statuses, expected",
    [
        ([], "pending"),
        (["Created"], "pending"),
        (["Acknowledged", "Created"], "processing"),
        (["Shipped", "Created"], "processing"),
        (["Shipped", "Delivered"], "completed"),
        (["Shipped", "Cancelled"], "completed"),
        (["Cancelled", "Cancelled"], "cancelled"),
    ],
)
def test_walmart_order_status_from_line_statuses(statuses, expected):
    assert derive_order_status(statuses) == expected


def test_walmart_connection_test_fetches_token_first(walmart, walmart_conn, fake_http):
    fake_http.add("POST", "/v3/token", {"access_token": "wm-token", "token_type": "Bearer", "expires_in": 900})
    fake_http.add("GET", "/v3/items", {"ItemResponse": []},
                  headers={"x-current-token-count": "19", "x-next-replenish-time": "1700000000000"})

    assert walmart.test_connection() is True

    token_call, items_call = fake_http.calls
    expected_basic = base64.b64encode(b"wid:wsecret").decode()
    assert token_call["headers"]["Authorization"] == f"Basic {expected_basic}"
    assert token_call["data"] == {"grant_type": "client_credentials"}
    assert items_call["headers"]["WM_SEC.ACCESS_TOKEN"] == "wm-token"
    assert items_call["headers"]["WM_SVC.NAME"]
    assert items_call["headers"]["WM_QOS.CORRELATION_ID"]
    assert walmart_conn.access_token == "wm-token"

    rl = walmart.get_rate_limit_status()
    assert (rl.remaining, rl.limit) == (19, 19)
    assert rl.reset_at == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)


def test_walmart_limit_is_highest_remaining_seen(walmart, walmart_conn, fake_http):
    walmart_conn.access_token = "wm-token"
    fake_http.add("GET", "/v3/items", {"ItemResponse": [], "nextCursor": "*"}, headers={"x-current-token-count": "19"})
    fake_http.add("GET", "/v3/items", {"ItemResponse": []}, headers={"x-current-token-count": "12"})

    walmart.get_products()
    walmart.get_products()

    rl = walmart.get_rate_limit_status()
    assert (rl.remaining, rl.limit) == (12, 19)


def test_walmart_missing_client_secret_fails_refresh(fake_http, make_connection):
    connector = WalmartConnector(session=fake_http).initialize(
        make_connection("walmart", credentials={"client_id": "wid"})
    )
    assert connector.test_connection() is False
    assert "client_secret" in connector.get_last_error()
    assert fake_http.calls == []


def test_walmart_items_page_ends_on_star_cursor(walmart, walmart_conn, fake_http):
    walmart_conn.access_token = "wm-token"
    fake_http.add("GET", "/v3/items", {"ItemResponse": [{
        "sku": "W-1", "productName": "Mug", "publishedStatus": "PUBLISHED",
        "price": {"amount": 8.5, "currency": "USD"}, "wpid": "7XY",
    }], "nextCursor": "*"})

    page = walmart.get_products(limit=1000)

    assert page.next_cursor is None
    assert page[0].external_id == "W-1"
    assert page[0].price == Decimal("8.50")
    assert page[0].is_active
    assert fake_http.last()["params"] == {"limit": 200, "nextCursor": "*"}


def test_walmart_transform_order_sums_charges():
    raw = {
        "purchaseOrderId": "PO-1",
        "customerOrderId": "C-1",
        "orderDate": 1700000000000,
        "shippingInfo": {"phone": "555", "postalAddress": {"name": "Jo", "city": "Austin", "country": "USA"}},
        "orderLines": {"orderLine": [{
            "lineNumber": "1",
            "item": {"sku": "W-1", "productName": "Mug"},
            "orderLineQuantity": {"amount": "2"},
            "charges": {"charge": [
                {"chargeType": "PRODUCT", "chargeAmount": {"amount": 20.0, "currency": "USD"},
                 "tax": {"taxAmount": {"amount": 1.6}}},
                {"chargeType": "SHIPPING", "chargeAmount": {"amount": 5.0, "currency": "USD"}},
            ]},
            "orderLineStatuses": {"orderLineStatus": [{"status": "Acknowledged"}]},
        }]},
    }
    order = WalmartConnector.transform_order(raw)
    assert order.external_id == "PO-1"
    assert order.status == "processing"
    assert (order.subtotal, order.shipping_cost, order.tax) == (Decimal("20.00"), Decimal("5.00"), Decimal("1.60"))
    assert order.total == Decimal("26.60")
    assert order.line_items[0]["price"] == Decimal("10.00")
    assert order.shipping_address["city"] == "Austin"


def test_walmart_adjust_inventory_writes_absolute_quantity(walmart, walmart_conn, fake_http):
    walmart_conn.access_token = "wm-token"
    fake_http.add("GET", "/v3/inventory", {"sku": "W-1", "quantity": {"unit": "EACH", "amount": 10}})
    fake_http.add("PUT", "/v3/inventory", {"sku": "W-1", "quantity": {"unit": "EACH", "amount": 13}})

    assert walmart.update_inventory(InventoryUpdate(sku="W-1", quantity=3, adjustment_type="adjust")) is True
    assert fake_http.last()["json"] == {"sku": "W-1", "quantity": {"unit": "EACH", "amount": 13}}


def test_walmart_adjust_gives_up_when_current_stock_unknown(walmart, walmart_conn, fake_http):
    walmart_conn.access_token = "wm-token"
    fake_http.add("GET", "/v3/inventory", {"errors": [{"code": "NOT_FOUND"}]}, status=404)

    assert walmart.update_inventory(InventoryUpdate(sku="W-1", quantity=3, adjustment_type="adjust")) is False
    assert not fake_http.calls_to("/v3/inventory", method="PUT")


def test_walmart_item_feed_without_feed_id_is_a_failure(walmart, walmart_conn, fake_http):
    walmart_conn.access_token = "wm-token"
    fake_http.add("POST", "/v3/feeds", {})

    assert walmart.create_product(PlatformProduct(title="Mug", sku="W-1", price=Decimal("8.50"))) is None
    assert "feedId" in walmart.get_last_error()
    assert fake_http.last()["params"] == {"feedType": "MP_ITEM"}
