"""
Amazon Selling Partner API connector
  - base: https://sellingpartnerapi-{region}.amazon.com（region: na / eu / fe）
  - 鉴权头 x-amz-access-token（LWA access token，1 小时过期，用 refresh_token 换）
  - 商品 = Listings Items API，按 seller SKU 定位；订单 = Orders v0，NextToken 分页
  - 限流头 x-amzn-RateLimit-Limit 只给出速率（req/s），没有剩余次数
"""

from __future__ import annotations

import dataclasses
import logging
import math
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote

from marketplace_hub.core.config import secret_value, settings
from marketplace_hub.utils.clock import now_utc

from ..dto import (
    ORDER_STATUS_CANCELLED, ORDER_STATUS_COMPLETED, ORDER_STATUS_PENDING, ORDER_STATUS_PROCESSING,
    InventoryUpdate, Page, PlatformOrder, PlatformProduct, RateLimitStatus,
)
from ..errors import ConnectorConfigError
from ..normalizers import as_dict, as_list, parse_datetime, pick, to_decimal, to_float, to_int, to_money, to_str
from ..platform import Platform
from .base import BasePlatformConnector

logger = logging.getLogger(__name__)


REGION_ENDPOINTS: Dict[str, str] = {
    "na": "https://sellingpartnerapi-na.amazon.com",
    "eu": "https://sellingpartnerapi-eu.amazon.com",
    "fe": "https://sellingpartnerapi-fe.amazon.com",
}

RATE_LIMIT_HEADER = "x-amzn-RateLimit-Limit"
LISTINGS_PATH = "/listings/2021-08-01/items"
LISTINGS_INCLUDED_DATA = "summaries,attributes,offers,fulfillmentAvailability"
LISTINGS_MAX_PAGE_SIZE = 20
LWA_TOKEN_TTL_SEC = 3600

ORDER_STATUS_MAP: Dict[str, str] = {
    "Pending": ORDER_STATUS_PENDING,
    "PendingAvailability": ORDER_STATUS_PENDING,
    "Unshipped": ORDER_STATUS_PROCESSING,
    "PartiallyShipped": ORDER_STATUS_PROCESSING,
    "Shipped": ORDER_STATUS_COMPLETED,
    "InvoiceUnconfirmed": ORDER_STATUS_COMPLETED,
    "Canceled": ORDER_STATUS_CANCELLED,
    "Unfulfillable": ORDER_STATUS_CANCELLED,
}

FULFILLMENT_CHANNEL_MAP: Dict[str, str] = {
    "AFN": "amazon_fulfilled",
    "MFN": "merchant_fulfilled",
}


def parse_rate_limit(value: Optional[str]) -> Optional[RateLimitStatus]:
    """
    "0.0167" / "2.0"（每秒请求数）→ limit 向上取整到至少 1。
    SP-API 不公布剩余额度：remaining 为 None（未知），只有 429 时记为 0。
    """
    rate = to_float(value)
    if rate is None:
        return None
    return RateLimitStatus(remaining=None, limit=max(1, math.ceil(rate)))


def _address(raw: Mapping[str, Any]) -> Dict[str, Any]:
    if not raw:
        return {}
    return {
        "name": raw.get("Name"),
        "address1": raw.get("AddressLine1"),
        "address2": raw.get("AddressLine2"),
        "city": raw.get("City"),
        "state": raw.get("StateOrRegion"),
        "postal_code": raw.get("PostalCode"),
        "country": raw.get("CountryCode"),
        "phone": raw.get("Phone"),
    }


class AmazonConnector(BasePlatformConnector):

    platform = Platform.AMAZON
    max_page_size = 100            # Orders v0 MaxResultsPerPage 上限
    supports_token_refresh = True


    # ---------- plumbing ----------
    def _base_url(self) -> str:
        conn = self._require_connection()
        region = (conn.credential("region") or conn.setting("region") or settings.AMAZON_DEFAULT_REGION).lower()
        if region not in REGION_ENDPOINTS:
            raise ConnectorConfigError(f"Amazon: unknown region {region!r}")
        return REGION_ENDPOINTS[region]

    def _auth_headers(self) -> Dict[str, str]:
        token = self._require(self._require_connection().access_token, "access token")
        return {"x-amz-access-token": token, "Content-Type": "application/json"}

    def _parse_rate_limit_headers(self, headers: Mapping[str, str]) -> Optional[RateLimitStatus]:
        return parse_rate_limit(headers.get(RATE_LIMIT_HEADER))

    def _observe_rate_limit(self, headers: Mapping[str, str], status: Optional[int] = None) -> None:
        super()._observe_rate_limit(headers, status)
        if status == 429:
            self._rate_limit = dataclasses.replace(self._rate_limit, remaining=0)

    def _ping(self) -> bool:
        result = self.request("GET", "/sellers/v1/marketplaceParticipations", op="sellers.participations")
        return bool(result.get("payload"))

    def _seller_id(self) -> str:
        conn = self._require_connection()
        return self._require(conn.external_store_id or conn.credential("seller_id"), "seller id")

    def _marketplace_id(self) -> str:
        ids = as_list(self._require_connection().credential("marketplace_ids"))
        return str(ids[0]) if ids else settings.AMAZON_DEFAULT_MARKETPLACE_ID

    def _listing_path(self, sku: Optional[str] = None) -> str:
        path = f"{LISTINGS_PATH}/{quote(self._seller_id(), safe='')}"
        if sku is not None:
            path += "/" + quote(str(sku), safe="")
        return path

    def _refresh_tokens(self) -> bool:
        conn = self._require_connection()
        client_id = conn.credential("client_id") or settings.AMAZON_LWA_CLIENT_ID
        client_secret = conn.credential("client_secret") or secret_value(settings.AMAZON_LWA_CLIENT_SECRET)
        if not (client_id and client_secret and conn.refresh_token):
            self._error("Amazon: refresh_token / LWA client credentials missing")
            return False
        result = self.request(
            "POST", settings.AMAZON_LWA_TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": conn.refresh_token,
                "client_id": client_id,
                "client_secret": client_secret,
            },
            authenticate=False, allow_refresh=False, op="lwa.token",
        )
        return self._apply_token_response(result, default_ttl=LWA_TOKEN_TTL_SEC)


    # ---------- products (listings) ----------
    def get_products(self, limit: int = 250, cursor: Optional[str] = None) -> Page[PlatformProduct]:
        try:
            path = self._listing_path()
        except ConnectorConfigError as e:
            return Page.failed(self._error(str(e)))
        params: Dict[str, Any] = {
            "marketplaceIds": self._marketplace_id(),
            "includedData": LISTINGS_INCLUDED_DATA,
            "pageSize": min(self._page_size(limit), LISTINGS_MAX_PAGE_SIZE),
        }
        if cursor:
            params["pageToken"] = cursor
        result = self.request("GET", path, params=params, op="listings.search")
        if not result.ok:
            return Page.failed(result.error)
        return self._build_page(as_list(result.get("items")), self.transform_product,
                                to_str(result.get("pagination.nextToken", "nextToken")), kind="listing")

    def get_product(self, external_id: str) -> Optional[PlatformProduct]:
        try:
            path = self._listing_path(external_id)
        except ConnectorConfigError as e:
            self._error(str(e))
            return None
        result = self.request("GET", path, params={"marketplaceIds": self._marketplace_id(),
                                                   "includedData": LISTINGS_INCLUDED_DATA}, op="listings.get")
        return self.transform_product(result.data) if result.ok and result.data else None

    def create_product(self, product: PlatformProduct) -> Optional[str]:
        if not product.sku:
            self._error("Amazon listings are keyed by seller SKU; product.sku is required")
            return None
        return product.sku if self._put_listing(product.sku, product, op="listings.create") else None

    def update_product(self, external_id: str, product: PlatformProduct) -> bool:
        return self._put_listing(external_id, product, op="listings.update")

    def delete_product(self, external_id: str) -> bool:
        try:
            path = self._listing_path(external_id)
        except ConnectorConfigError as e:
            self._error(str(e))
            return False
        return self.request("DELETE", path, params={"marketplaceIds": self._marketplace_id()},
                            op="listings.delete").ok

    def _put_listing(self, sku: str, product: PlatformProduct, *, op: str) -> bool:
        try:
            path = self._listing_path(sku)
        except ConnectorConfigError as e:
            self._error(str(e))
            return False
        body = self.build_listing_payload(product, self._marketplace_id(),
                                          self._require_connection().setting("fulfillment_channel", "DEFAULT"))
        result = self.request("PUT", path, params={"marketplaceIds": self._marketplace_id()}, json=body, op=op)
        if not result.ok:
            return False
        # 200 也可能是 INVALID（带 issues）
        if result.get("status") == "INVALID":
            issues = "; ".join(str(i.get("message")) for i in as_list(result.get("issues")) if isinstance(i, Mapping))
            self._error(f"listing {sku} rejected: {issues or 'INVALID'}")
            return False
        return True


    # ---------- orders ----------
    def _get_orders(self, since, limit: int, cursor: Optional[str]) -> Page[PlatformOrder]:
        params: Dict[str, Any] = {"MarketplaceIds": self._marketplace_id(), "MaxResultsPerPage": limit}
        if cursor:
            params["NextToken"] = cursor
        else:
            if since is None:
                since = now_utc() - timedelta(days=settings.AMAZON_ORDER_LOOKBACK_DAYS)
            params["CreatedAfter"] = since.isoformat() if isinstance(since, datetime) else str(since)
        result = self.request("GET", "/orders/v0/orders", params=params, op="orders.list")
        if not result.ok:
            return Page.failed(result.error)
        return self._build_page(as_list(result.get("payload.Orders")), self.transform_order,
                                to_str(result.get("payload.NextToken")), kind="order")

    def get_order(self, external_id: str) -> Optional[PlatformOrder]:
        result = self.request("GET", f"/orders/v0/orders/{external_id}", op="orders.get")
        raw = result.get("payload")
        if not raw:
            return None
        items = self._order_items(external_id)
        return self.transform_order(raw, items or [])

    def _order_items(self, external_id: str) -> Optional[List[Dict[str, Any]]]:
        result = self.request("GET", f"/orders/v0/orders/{external_id}/orderItems", op="orders.items")
        if not result.ok:
            return None
        return [as_dict(i) for i in as_list(result.get("payload.OrderItems"))]

    def fulfill_order(self, external_id: str, fulfillment_data: Mapping[str, Any]) -> bool:
        items = self._order_items(external_id)
        if not items:
            if items is not None:
                self._error(f"order {external_id} has no order items")
            return False

        ship_date = fulfillment_data.get("shipped_at") or now_utc()
        payload = {
            "marketplaceId": self._marketplace_id(),
            "packageDetail": {
                "packageReferenceId": str(fulfillment_data.get("package_reference_id") or "1"),
                "carrierCode": fulfillment_data.get("carrier"),
                "shippingMethod": fulfillment_data.get("shipping_method"),
                "trackingNumber": fulfillment_data.get("tracking_number"),
                "shipDate": ship_date.isoformat() if isinstance(ship_date, datetime) else str(ship_date),
                "orderItems": [
                    {"orderItemId": i.get("OrderItemId"), "quantity": to_int(i.get("QuantityOrdered"), 0)}
                    for i in items
                ],
            },
        }
        return self.request("POST", f"/orders/v0/orders/{external_id}/shipmentConfirmation",
                            json=payload, op="orders.confirm_shipment").ok


    # ---------- inventory ----------
    def _update_inventory(self, update: InventoryUpdate) -> bool:
        sku = update.sku or update.external_id
        if not sku:
            self._error("Amazon inventory update needs a seller SKU")
            return False

        current = None
        if update.is_adjustment:
            existing = self.get_product(sku)
            current = existing.quantity if existing is not None else None
        target = self._target_quantity(update, current)
        if target is None:
            return False

        try:
            path = self._listing_path(sku)
        except ConnectorConfigError as e:
            self._error(str(e))
            return False
        conn = self._require_connection()
        body = {
            "productType": conn.setting("product_type", "PRODUCT"),
            "patches": [{
                "op": "replace",
                "path": "/attributes/fulfillment_availability",
                "value": [{
                    "fulfillment_channel_code": conn.setting("fulfillment_channel", "DEFAULT"),
                    "quantity": target,
                }],
            }],
        }
        result = self.request("PATCH", path, params={"marketplaceIds": self._marketplace_id()}, json=body,
                              op="listings.patch_quantity")
        return result.ok and result.get("status") != "INVALID"


    # ---------- catalog ----------
    def get_categories(self) -> List[Dict[str, Any]]:
        result = self.request("GET", "/definitions/2020-09-01/productTypes",
                              params={"marketplaceIds": self._marketplace_id()}, op="product_types.search")
        return [
            {"id": t.get("name"), "name": t.get("displayName") or t.get("name")}
            for t in as_list(result.get("productTypes")) if isinstance(t, Mapping)
        ]

    def get_category_attributes(self, category_id: str) -> Dict[str, Any]:
        result = self.request(
            "GET", f"/definitions/2020-09-01/productTypes/{category_id}",
            params={"marketplaceIds": self._marketplace_id(), "requirements": "LISTING"},
            op="product_types.get",
        )
        if not result.ok:
            return {}
        return {
            "product_type": result.get("productType", default=category_id),
            "requirements": result.get("requirements"),
            "schema_url": result.get("schema.link.resource"),
            "property_groups": as_dict(result.get("propertyGroups")),
        }


    # ---------- transforms ----------
    @staticmethod
    def transform_product(raw: Mapping[str, Any]) -> PlatformProduct:
        summary = as_dict(pick(raw, "summaries.0"))
        attributes = as_dict(raw.get("attributes"))
        statuses = [str(s).upper() for s in as_list(summary.get("status"))]

        image = pick(summary, "mainImage.link")
        return PlatformProduct(
            external_id=to_str(raw.get("sku")),
            title=summary.get("itemName") or to_str(raw.get("sku")) or "",
            description=str(pick(attributes, "product_description.0.value", default="")),
            sku=to_str(raw.get("sku")),
            price=to_decimal(pick(raw, "offers.0.price.amount", "offers.0.price.listingPrice.amount")),
            quantity=to_int(pick(raw, "fulfillmentAvailability.0.quantity"), 0),
            brand=to_str(pick(attributes, "brand.0.value")),
            category=to_str(summary.get("productType")),
            category_id=to_str(summary.get("productType")),
            images=[image] if image else [],
            attributes=attributes,
            condition=str(pick(summary, "conditionType", default="new")),
            status="active" if "BUYABLE" in statuses else "inactive",
            metadata={
                "asin": summary.get("asin"),
                "marketplace_id": summary.get("marketplaceId"),
                "fulfillment_channel": pick(raw, "fulfillmentAvailability.0.fulfillmentChannelCode"),
            },
        )

    @staticmethod
    def build_listing_payload(product: PlatformProduct, marketplace_id: str,
                              fulfillment_channel: str = "DEFAULT") -> Dict[str, Any]:
        def _attr(value):
            return [{"value": value, "marketplace_id": marketplace_id}]

        attributes: Dict[str, Any] = {
            "item_name": _attr(product.title),
            "product_description": _attr(product.description),
            "fulfillment_availability": [
                {"fulfillment_channel_code": fulfillment_channel, "quantity": product.quantity}
            ],
        }
        if product.brand:
            attributes["brand"] = _attr(product.brand)
        if product.price is not None:
            attributes["purchasable_offer"] = [{
                "marketplace_id": marketplace_id,
                "currency": product.metadata.get("currency", "USD"),
                "our_price": [{"schedule": [{"value_with_tax": float(product.price)}]}],
            }]
        if product.images:
            attributes["main_product_image_locator"] = [
                {"media_location": product.images[0], "marketplace_id": marketplace_id}
            ]
        return {
            "productType": product.category_id or product.category or "PRODUCT",
            "requirements": "LISTING",
            "attributes": attributes,
        }

    @staticmethod
    def transform_order(raw: Mapping[str, Any], items: Optional[List[Mapping[str, Any]]] = None) -> PlatformOrder:
        buyer = as_dict(raw.get("BuyerInfo"))
        amazon_status = raw.get("OrderStatus") or ""
        total = to_money(pick(raw, "OrderTotal.Amount"))

        line_items = []
        subtotal = shipping = tax = discount = to_money(None)
        for item in items or []:
            qty = to_int(item.get("QuantityOrdered"), 0)
            line_total = to_money(pick(item, "ItemPrice.Amount"))
            subtotal += line_total
            shipping += to_money(pick(item, "ShippingPrice.Amount"))
            tax += to_money(pick(item, "ItemTax.Amount")) + to_money(pick(item, "ShippingTax.Amount"))
            discount += to_money(pick(item, "PromotionDiscount.Amount")) + to_money(pick(item, "ShippingDiscount.Amount"))
            line_items.append({
                "external_id": to_str(item.get("OrderItemId")),
                "product_id": to_str(item.get("ASIN")),
                "sku": item.get("SellerSKU"),
                "title": item.get("Title"),
                "quantity": qty,
                "price": (line_total / qty).quantize(Decimal("0.01")) if qty else line_total,
                "total": line_total,
            })
        if not line_items:
            # 订单头只有总额；没拉明细时不拆分
            subtotal = total

        return PlatformOrder(
            external_id=to_str(raw.get("AmazonOrderId")) or "",
            order_number=to_str(raw.get("SellerOrderId") or raw.get("AmazonOrderId")),
            status=ORDER_STATUS_MAP.get(amazon_status, ORDER_STATUS_PENDING),
            fulfillment_status={"Shipped": "fulfilled", "PartiallyShipped": "partial"}.get(amazon_status, "unfulfilled"),
            payment_status="pending" if amazon_status in ("Pending", "PendingAvailability") else "paid",
            total=total,
            subtotal=subtotal,
            shipping_cost=shipping,
            tax=tax,
            discount=discount,
            currency=pick(raw, "OrderTotal.CurrencyCode", default="USD"),
            customer={
                "name": buyer.get("BuyerName"),
                "email": buyer.get("BuyerEmail"),
            },
            shipping_address=_address(as_dict(raw.get("ShippingAddress"))),
            line_items=line_items,
            ordered_at=parse_datetime(raw.get("PurchaseDate")),
            metadata={
                "marketplace_id": raw.get("MarketplaceId"),
                "fulfillment_channel": FULFILLMENT_CHANNEL_MAP.get(raw.get("FulfillmentChannel") or "", raw.get("FulfillmentChannel")),
                "is_prime": raw.get("IsPrime"),
                "platform_status": amazon_status,
            },
        )
