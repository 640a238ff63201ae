"""
Walmart Marketplace API connector (v3)
  - token: client_credentials（Basic client_id:client_secret）→ /token，15 分钟过期，没有 refresh_token
  - 每个请求都要 WM_SEC.ACCESS_TOKEN / WM_SVC.NAME / WM_QOS.CORRELATION_ID
  - 限流头 x-current-token-count（剩余）/ x-next-replenish-time（epoch ms）
  - 商品创建/更新走 MP_ITEM feed（异步，返回 feedId）；库存是绝对值写入
"""

from __future__ import annotations

import base64
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from marketplace_hub.core.config import settings
from marketplace_hub.utils.clock import now_utc

from ..dto import (
    ORDER_STATUS_CANCELLED, ORDER_STATUS_COMPLETED, ORDER_STATUS_PENDING, ORDER_STATUS_PROCESSING,
    InventoryUpdate, Page, PlatformOrder, PlatformProduct, RateLimitStatus,
)
from ..errors import ConnectorConfigError
from ..normalizers import as_dict, as_list, pick, to_decimal, to_int, to_money, to_str
from ..platform import Platform
from .base import BasePlatformConnector

logger = logging.getLogger(__name__)


MP_ITEM_FEED_VERSION = "4.2"


def _epoch_ms(value) -> Optional[datetime]:
    ms = to_int(value)
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)


def derive_order_status(line_statuses: List[str]) -> str:
    """Walmart 状态挂在每个 order line 上，整单状态由各行汇总。"""
    statuses = {s for s in line_statuses if s}
    if not statuses:
        return ORDER_STATUS_PENDING
    if statuses <= {"Cancelled"}:
        return ORDER_STATUS_CANCELLED
    if statuses <= {"Shipped", "Delivered", "Cancelled"}:
        return ORDER_STATUS_COMPLETED
    if statuses & {"Acknowledged", "Shipped", "Delivered"}:
        return ORDER_STATUS_PROCESSING
    return ORDER_STATUS_PENDING


class WalmartConnector(BasePlatformConnector):

    platform = Platform.WALMART
    max_page_size = 200
    supports_token_refresh = True


    # ---------- plumbing ----------
    def _base_url(self) -> str:
        conn = self._require_connection()
        return (conn.setting("base_url") or settings.WALMART_BASE_URL).rstrip("/")

    def _client_credentials(self):
        conn = self._require_connection()
        client_id = self._require(conn.credential("client_id"), "client_id")
        client_secret = self._require(conn.credential("client_secret"), "client_secret")
        return client_id, client_secret

    def _service_headers(self) -> Dict[str, str]:
        client_id, client_secret = self._client_credentials()
        basic = base64.b64encode(f"{client_id}:{client_secret}".encode()).decode()
        return {
            "Authorization": f"Basic {basic}",
            "WM_SVC.NAME": settings.WALMART_SERVICE_NAME,
            "WM_QOS.CORRELATION_ID": str(uuid.uuid4()),
        }

    def _auth_headers(self) -> Dict[str, str]:
        token = self._require(self._require_connection().access_token, "access token")
        headers = self._service_headers()
        headers["WM_SEC.ACCESS_TOKEN"] = token
        headers["Content-Type"] = "application/json"
        return headers

    def _parse_rate_limit_headers(self, headers: Mapping[str, str]) -> Optional[RateLimitStatus]:
        remaining = to_int(headers.get("x-current-token-count"))
        if remaining is None:
            return None
        # 没有“总量”头：记下见过的最大剩余量
        limit = max(self._rate_limit.limit, remaining)
        return RateLimitStatus(remaining=remaining, limit=limit,
                               reset_at=_epoch_ms(headers.get("x-next-replenish-time")))

    def _refresh_tokens(self) -> bool:
        try:
            headers = self._service_headers()
        except ConnectorConfigError as e:
            self._error(str(e))
            return False
        headers["Content-Type"] = "application/x-www-form-urlencoded"
        result = self.request("POST", "/token", data={"grant_type": "client_credentials"}, headers=headers,
                              authenticate=False, allow_refresh=False, op="token.client_credentials")
        return self._apply_token_response(result, default_ttl=settings.WALMART_TOKEN_TTL_SEC)

    def _ping(self) -> bool:
        if not self.refresh_tokens_if_needed():
            return False
        return self.request("GET", "/items", params={"limit": 1}, op="items.ping").ok


    # ---------- products ----------
    def get_products(self, limit: int = 250, cursor: Optional[str] = None) -> Page[PlatformProduct]:
        params = {"limit": self._page_size(limit), "nextCursor": cursor or "*"}
        result = self.request("GET", "/items", params=params, op="items.list")
        if not result.ok:
            return Page.failed(result.error)
        raw_items = as_list(result.get("ItemResponse"))
        next_cursor = to_str(result.get("nextCursor"))
        # 最后一页也可能回 "*" 或空串
        if not raw_items or next_cursor in ("", "*"):
            next_cursor = None
        return self._build_page(raw_items, self.transform_product, next_cursor, kind="item")

    def get_product(self, external_id: str) -> Optional[PlatformProduct]:
        result = self.request("GET", f"/items/{external_id}", op="items.get")
        raw = result.get("ItemResponse.0")
        return self.transform_product(raw) if raw else None

    def create_product(self, product: PlatformProduct) -> Optional[str]:
        if not product.sku:
            self._error("Walmart items are keyed by SKU; product.sku is required")
            return None
        return product.sku if self._submit_item_feed(product, op="feeds.create_item") else None

    def update_product(self, external_id: str, product: PlatformProduct) -> bool:
        if product.sku != external_id:
            product = PlatformProduct.from_dict({**product.to_dict(), "sku": external_id})
        return self._submit_item_feed(product, op="feeds.update_item")

    def delete_product(self, external_id: str) -> bool:
        return self.request("DELETE", f"/items/{external_id}", op="items.retire").ok

    def _submit_item_feed(self, product: PlatformProduct, *, op: str) -> bool:
        result = self.request("POST", "/feeds", params={"feedType": "MP_ITEM"},
                              json=self.build_item_feed(product), op=op)
        if result.ok and not result.get("feedId"):
            self._error(f"feed for {product.sku} returned no feedId")
            return False
        if result.ok:
            logger.info("walmart.feed.submitted sku=%s feed_id=%s", product.sku, result.get("feedId"))
        return result.ok


    # ---------- orders ----------
    def _get_orders(self, since, limit: int, cursor: Optional[str]) -> Page[PlatformOrder]:
        if cursor:
            # nextCursor 本身就是完整的 query string（"?limit=...&soIndex=..."）
            result = self.request("GET", "/orders" + (cursor if cursor.startswith("?") else "?" + cursor),
                                  op="orders.list")
        else:
            params: Dict[str, Any] = {"limit": limit}
            if since is not None:
                params["createdStartDate"] = since.isoformat() if isinstance(since, datetime) else str(since)
            result = self.request("GET", "/orders", params=params, op="orders.list")
        if not result.ok:
            return Page.failed(result.error)
        return self._build_page(as_list(result.get("list.elements.order")), self.transform_order,
                                to_str(result.get("list.meta.nextCursor")) or None, kind="order")

    def get_order(self, external_id: str) -> Optional[PlatformOrder]:
        result = self.request("GET", f"/orders/{external_id}", op="orders.get")
        raw = result.get("order")
        return self.transform_order(raw) if raw else None

    def fulfill_order(self, external_id: str, fulfillment_data: Mapping[str, Any]) -> bool:
        result = self.request("GET", f"/orders/{external_id}", op="orders.get")
        lines = as_list(result.get("order.orderLines.orderLine"))
        if not lines:
            if result.ok:
                self._error(f"order {external_id} has no order lines")
            return False

        shipped_at = fulfillment_data.get("shipped_at") or now_utc()
        tracking = {
            "shipDateTime": int(shipped_at.timestamp() * 1000) if isinstance(shipped_at, datetime) else shipped_at,
            "carrierName": {"carrier": fulfillment_data.get("carrier")},
            "methodCode": fulfillment_data.get("shipping_method") or "Standard",
            "trackingNumber": fulfillment_data.get("tracking_number"),
            "trackingURL": fulfillment_data.get("tracking_url"),
        }
        payload = {"orderShipment": {"orderLines": {"orderLine": [
            {
                "lineNumber": line.get("lineNumber"),
                "orderLineStatuses": {"orderLineStatus": [{
                    "status": "Shipped",
                    "statusQuantity": {
                        "unitOfMeasurement": "EACH",
                        "amount": str(pick(line, "orderLineQuantity.amount", default="1")),
                    },
                    "trackingInfo": tracking,
                }]},
            }
            for line in lines if isinstance(line, Mapping)
        ]}}}
        return self.request("POST", f"/orders/{external_id}/shipping", json=payload, op="orders.ship").ok


    # ---------- inventory ----------
    def _read_quantity(self, sku: str) -> Optional[int]:
        result = self.request("GET", "/inventory", params={"sku": sku}, op="inventory.get")
        return to_int(result.get("quantity.amount")) if result.ok else None

    def _update_inventory(self, update: InventoryUpdate) -> bool:
        sku = update.sku or update.external_id
        if not sku:
            self._error("Walmart inventory update needs a SKU")
            return False
        current = self._read_quantity(sku) if update.is_adjustment else None
        target = self._target_quantity(update, current)
        if target is None:
            return False
        body = {"sku": sku, "quantity": {"unit": "EACH", "amount": target}}
        return self.request("PUT", "/inventory", params={"sku": sku}, json=body, op="inventory.put").ok


    # ---------- catalog ----------
    def get_categories(self) -> List[Dict[str, Any]]:
        result = self.request("GET", "/utilities/taxonomy", op="taxonomy.get")
        out: List[Dict[str, Any]] = []
        for cat in as_list(result.get("payload")):
            cat = as_dict(cat)
            name = cat.get("category")
            out.append({"id": name, "name": name, "parent_id": None})
            for sub in as_list(cat.get("subcategory")):
                sub = as_dict(sub)
                out.append({"id": sub.get("subCategoryId"), "name": sub.get("subCategoryName"), "parent_id": name})
        return out

    def get_category_attributes(self, category_id: str) -> Dict[str, Any]:
        body = {"feedType": "MP_ITEM", "version": MP_ITEM_FEED_VERSION, "productTypes": [category_id]}
        result = self.request("POST", "/items/spec", json=body, op="items.spec")
        if not result.ok:
            return {}
        return {"product_type": category_id, "schema": result.get("schema", default=result.data)}


    # ---------- transforms ----------
    @staticmethod
    def transform_product(raw: Mapping[str, Any]) -> PlatformProduct:
        published = str(raw.get("publishedStatus") or "").upper()
        return PlatformProduct(
            external_id=to_str(raw.get("sku")),
            title=raw.get("productName") or "",
            sku=to_str(raw.get("sku")),
            barcode=to_str(pick(raw, "upc", "gtin")),
            price=to_decimal(pick(raw, "price.amount")),
            quantity=to_int(pick(raw, "quantity.amount"), 0),
            category=to_str(raw.get("productType")),
            category_id=to_str(raw.get("productType")),
            condition=str(raw.get("condition") or "new").lower(),
            status="active" if published == "PUBLISHED" else "inactive",
            metadata={
                "wpid": raw.get("wpid"),
                "item_id": raw.get("itemId"),
                "lifecycle_status": raw.get("lifecycleStatus"),
                "published_status": raw.get("publishedStatus"),
                "currency": pick(raw, "price.currency"),
            },
        )

    @staticmethod
    def build_item_feed(product: PlatformProduct) -> Dict[str, Any]:
        orderable: Dict[str, Any] = {
            "sku": product.sku,
            "productName": product.title,
            "brand": product.brand,
            "price": float(product.price) if product.price is not None else None,
            "ShippingWeight": float(product.weight) if product.weight is not None else None,
        }
        if product.barcode:
            orderable["productIdentifiers"] = {"productIdType": "UPC", "productId": product.barcode}
        visible = {
            "shortDescription": product.description,
            "mainImageUrl": product.images[0] if product.images else None,
            "productSecondaryImageURL": list(product.images[1:]),
            **product.attributes,
        }
        return {
            "MPItemFeedHeader": {"version": MP_ITEM_FEED_VERSION, "locale": "en", "sellingChannel": "marketplace"},
            "MPItem": [{
                "Orderable": orderable,
                "Visible": {product.category_id or product.category or "Other": visible},
            }],
        }

    @staticmethod
    def transform_order(raw: Mapping[str, Any]) -> PlatformOrder:
        shipping_info = as_dict(raw.get("shippingInfo"))
        postal = as_dict(shipping_info.get("postalAddress"))

        line_items: List[Dict[str, Any]] = []
        line_statuses: List[str] = []
        subtotal = shipping = tax = to_money(None)
        currency = "USD"
        for line in as_list(pick(raw, "orderLines.orderLine")):
            line = as_dict(line)
            qty = to_int(pick(line, "orderLineQuantity.amount"), 0)
            line_total = to_money(None)
            for charge in as_list(pick(line, "charges.charge")):
                charge = as_dict(charge)
                amount = to_money(pick(charge, "chargeAmount.amount"))
                currency = pick(charge, "chargeAmount.currency", default=currency)
                tax += to_money(pick(charge, "tax.taxAmount.amount"))
                if charge.get("chargeType") == "SHIPPING":
                    shipping += amount
                else:
                    line_total += amount
            subtotal += line_total
            line_statuses.extend(
                str(s.get("status")) for s in as_list(pick(line, "orderLineStatuses.orderLineStatus"))
                if isinstance(s, Mapping)
            )
            line_items.append({
                "external_id": to_str(line.get("lineNumber")),
                "sku": pick(line, "item.sku"),
                "title": pick(line, "item.productName"),
                "quantity": qty,
                "price": to_money(line_total / qty) if qty else line_total,
                "total": line_total,
            })

        status = derive_order_status(line_statuses)
        address = {
            "name": postal.get("name"),
            "address1": postal.get("address1"),
            "address2": postal.get("address2"),
            "city": postal.get("city"),
            "state": postal.get("state"),
            "postal_code": postal.get("postalCode"),
            "country": postal.get("country"),
            "phone": shipping_info.get("phone"),
        } if postal else {}

        return PlatformOrder(
            external_id=to_str(raw.get("purchaseOrderId")) or "",
            order_number=to_str(raw.get("customerOrderId")),
            status=status,
            fulfillment_status="fulfilled" if status == ORDER_STATUS_COMPLETED else "unfulfilled",
            payment_status="paid",
            total=subtotal + shipping + tax,
            subtotal=subtotal,
            shipping_cost=shipping,
            tax=tax,
            currency=currency,
            customer={"email": raw.get("customerEmailId"), "name": postal.get("name")},
            shipping_address=address,
            line_items=line_items,
            ordered_at=_epoch_ms(raw.get("orderDate")),
            metadata={
                "ship_method": shipping_info.get("methodCode"),
                "estimated_ship_date": _epoch_ms(shipping_info.get("estimatedShipDate")),
                "line_statuses": sorted(set(line_statuses)),
            },
        )
