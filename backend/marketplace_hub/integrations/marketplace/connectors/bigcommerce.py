"""
BigCommerce connector
  - catalog 走 v3：{base}/{store_hash}/v3；订单 / shipment / store 仍是 v2
  - 鉴权头 X-Auth-Token（长期 token，不刷新）
  - 限流头 X-Rate-Limit-Requests-Left / -Requests-Quota / -Time-Reset-Ms
  - 分页：v3 用 page + meta.pagination；v2 没有分页元数据，满页才有下一页；v2 空结果是 204
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from marketplace_hub.core.config import settings
from marketplace_hub.utils.clock import now_utc

from ..dto import (
    ORDER_STATUS_CANCELLED, ORDER_STATUS_COMPLETED, ORDER_STATUS_PENDING, ORDER_STATUS_PROCESSING,
    ORDER_STATUS_REFUNDED, InventoryUpdate, Page, PlatformOrder, PlatformProduct, RateLimitStatus,
)
from ..errors import ConnectorConfigError
from ..normalizers import as_dict, as_list, parse_datetime, to_decimal, to_int, to_money, to_str
from ..platform import Platform
from .base import BasePlatformConnector

logger = logging.getLogger(__name__)


# status_id → 标准状态；其余（1 Pending / 7 Awaiting Payment / 0 Incomplete ...）按 pending
ORDER_STATUS_BY_ID: Dict[int, str] = {
    2: ORDER_STATUS_COMPLETED,    # Shipped
    10: ORDER_STATUS_COMPLETED,   # Completed
    5: ORDER_STATUS_CANCELLED,
    4: ORDER_STATUS_REFUNDED,
    14: ORDER_STATUS_REFUNDED,    # Partially Refunded
    3: ORDER_STATUS_PROCESSING,   # Partially Shipped
    8: ORDER_STATUS_PROCESSING,   # Awaiting Pickup
    9: ORDER_STATUS_PROCESSING,   # Awaiting Shipment
    11: ORDER_STATUS_PROCESSING,  # Awaiting Fulfillment
}


def parse_rate_limit_headers(headers: Mapping[str, str]) -> Optional[RateLimitStatus]:
    left = to_int(headers.get("X-Rate-Limit-Requests-Left"))
    quota = to_int(headers.get("X-Rate-Limit-Requests-Quota"))
    if left is None or quota is None:
        return None
    reset_ms = to_int(headers.get("X-Rate-Limit-Time-Reset-Ms"))
    reset_at = now_utc() + timedelta(milliseconds=reset_ms) if reset_ms is not None else None
    return RateLimitStatus(remaining=left, limit=quota, reset_at=reset_at)


def _address(raw: Mapping[str, Any]) -> Dict[str, Any]:
    if not raw:
        return {}
    return {
        "first_name": raw.get("first_name"),
        "last_name": raw.get("last_name"),
        "address1": raw.get("street_1"),
        "address2": raw.get("street_2"),
        "city": raw.get("city"),
        "state": raw.get("state"),
        "postal_code": raw.get("zip"),
        "country": raw.get("country_iso2") or raw.get("country"),
        "phone": raw.get("phone"),
    }


def _embedded(raw: Mapping[str, Any], key: str) -> List[Mapping[str, Any]]:
    """列表接口里是 {url, resource} 资源链接，单拉之后才是真正的列表。"""
    val = raw.get(key)
    if not isinstance(val, list):
        return []
    return [v for v in val if isinstance(v, Mapping)]


class BigCommerceConnector(BasePlatformConnector):

    platform = Platform.BIGCOMMERCE
    max_page_size = 250


    # ---------- plumbing ----------
    def _store_root(self) -> str:
        store_hash = self._require(self._require_connection().external_store_id, "store hash (external_store_id)")
        return f"{settings.BIGCOMMERCE_BASE_URL.rstrip('/')}/{store_hash}"

    def _base_url(self) -> str:
        return self._store_root() + "/v3"

    def _v2_url(self) -> str:
        return self._store_root() + "/v2"

    def _auth_headers(self) -> Dict[str, str]:
        token = self._require(self._require_connection().access_token, "access token")
        return {"X-Auth-Token": token, "Content-Type": "application/json"}

    def _parse_rate_limit_headers(self, headers: Mapping[str, str]) -> Optional[RateLimitStatus]:
        return parse_rate_limit_headers(headers)

    def _v2(self, method: str, path: str, **kwargs):
        try:
            base = self._v2_url()
        except ConnectorConfigError as e:
            return self._fail(kwargs.get("op") or path, f"configuration error: {e}")
        return self.request(method, path, base_url=base, **kwargs)

    def _ping(self) -> bool:
        result = self._v2("GET", "/store", op="store.get")
        return bool(result.get("id", "domain"))


    # ---------- products ----------
    def get_products(self, limit: int = 250, cursor: Optional[str] = None) -> Page[PlatformProduct]:
        page = to_int(cursor, 1) or 1
        params = {"limit": self._page_size(limit), "page": page, "include": "images,variants"}
        result = self.request("GET", "/catalog/products", params=params, op="products.list")
        if not result.ok:
            return Page.failed(result.error)
        current = to_int(result.get("meta.pagination.current_page"), page)
        total_pages = to_int(result.get("meta.pagination.total_pages"), current)
        return self._build_page(as_list(result.get("data")), self.transform_product,
                                str(current + 1) if current < total_pages else None, kind="product")

    def get_product(self, external_id: str) -> Optional[PlatformProduct]:
        result = self.request("GET", f"/catalog/products/{external_id}",
                              params={"include": "images,variants"}, op="products.get")
        raw = result.get("data")
        return self.transform_product(raw) if raw else None

    def create_product(self, product: PlatformProduct) -> Optional[str]:
        result = self.request("POST", "/catalog/products", json=self.build_product_payload(product),
                              op="products.create")
        return to_str(result.get("data.id"))

    def update_product(self, external_id: str, product: PlatformProduct) -> bool:
        return self.request("PUT", f"/catalog/products/{external_id}", json=self.build_product_payload(product),
                            op="products.update").ok

    def delete_product(self, external_id: str) -> bool:
        return self.request("DELETE", f"/catalog/products/{external_id}", op="products.delete").ok


    # ---------- orders (v2) ----------
    def _get_orders(self, since, limit: int, cursor: Optional[str]) -> Page[PlatformOrder]:
        page = to_int(cursor, 1) or 1
        params: Dict[str, Any] = {"limit": limit, "page": page, "sort": "date_created:asc"}
        if since is not None:
            params["min_date_created"] = since.isoformat() if isinstance(since, datetime) else str(since)
        result = self._v2("GET", "/orders", params=params, op="orders.list")
        if not result.ok:
            return Page.failed(result.error)
        raw_orders = as_list(result.data)          # 204 → None → []
        next_cursor = str(page + 1) if len(raw_orders) >= limit else None
        return self._build_page(raw_orders, self.transform_order, next_cursor, kind="order")

    def get_order(self, external_id: str) -> Optional[PlatformOrder]:
        result = self._v2("GET", f"/orders/{external_id}", op="orders.get")
        if not result.ok or not isinstance(result.data, Mapping):
            return None
        raw = dict(result.data)
        # v2 订单里 products / shipping_addresses 只是资源链接，单独拉
        products = self._v2("GET", f"/orders/{external_id}/products", op="orders.products")
        if products.ok:
            raw["products"] = as_list(products.data)
        addresses = self._v2("GET", f"/orders/{external_id}/shipping_addresses", op="orders.shipping_addresses")
        if addresses.ok:
            raw["shipping_addresses"] = as_list(addresses.data)
        return self.transform_order(raw)

    def fulfill_order(self, external_id: str, fulfillment_data: Mapping[str, Any]) -> bool:
        address_id = fulfillment_data.get("address_id")
        if address_id is None:
            addresses = self._v2("GET", f"/orders/{external_id}/shipping_addresses", op="orders.shipping_addresses")
            address_id = to_int(addresses.get("0.id"))
            if address_id is None:
                if addresses.ok:
                    self._error(f"order {external_id} has no shipping address")
                return False

        items = fulfillment_data.get("items")
        if not items:
            products = self._v2("GET", f"/orders/{external_id}/products", op="orders.products")
            if not products.ok:
                return False
            items = [
                {"order_product_id": p.get("id"), "quantity": to_int(p.get("quantity"), 1)}
                for p in as_list(products.data) if isinstance(p, Mapping)
            ]

        payload = {
            "order_address_id": address_id,
            "tracking_number": fulfillment_data.get("tracking_number") or "",
            "shipping_method": fulfillment_data.get("shipping_method") or "Standard",
            "shipping_provider": fulfillment_data.get("carrier") or "",
            "items": list(items),
        }
        return self._v2("POST", f"/orders/{external_id}/shipments", json=payload, op="shipments.create").ok


    # ---------- inventory ----------
    def _update_inventory(self, update: InventoryUpdate) -> bool:
        if not update.external_id:
            self._error(f"BigCommerce inventory update for {update.sku!r} needs external_id (product id)")
            return False

        path = f"/catalog/products/{update.external_id}"
        if update.external_variant_id:
            path += f"/variants/{update.external_variant_id}"

        current = None
        if update.is_adjustment:
            existing = self.request("GET", path, op="inventory.read")
            current = to_int(existing.get("data.inventory_level"))
        target = self._target_quantity(update, current)
        if target is None:
            return False
        return self.request("PUT", path, json={"inventory_level": target}, op="inventory.write").ok


    # ---------- catalog ----------
    def get_categories(self) -> List[Dict[str, Any]]:
        result = self.request("GET", "/catalog/categories", params={"limit": 250}, op="categories.list")
        return [
            {
                "id": to_str(c.get("id")),
                "name": c.get("name"),
                "parent_id": to_str(c.get("parent_id")) if c.get("parent_id") else None,
                "path": (c.get("custom_url") or {}).get("url"),
            }
            for c in as_list(result.get("data")) if isinstance(c, Mapping)
        ]

    def get_category_attributes(self, category_id: str) -> Dict[str, Any]:
        # 没有类目专属属性，只有自由的 custom fields
        return {"custom_fields": [{"name": "Custom Field", "type": "string"}]}


    # ---------- transforms ----------
    @staticmethod
    def transform_product(raw: Mapping[str, Any]) -> PlatformProduct:
        categories = as_list(raw.get("categories"))
        variants = [as_dict(v) for v in as_list(raw.get("variants"))]
        return PlatformProduct(
            external_id=to_str(raw.get("id")),
            title=raw.get("name") or "",
            description=raw.get("description") or "",
            sku=raw.get("sku") or None,
            barcode=raw.get("upc") or raw.get("gtin") or None,
            price=to_decimal(raw.get("price")),
            compare_at_price=to_decimal(raw.get("retail_price")) or None,
            quantity=to_int(raw.get("inventory_level"), 0),
            weight=to_decimal(raw.get("weight"), q="0.001"),
            brand=to_str(raw.get("brand_id")) if raw.get("brand_id") else None,
            category_id=to_str(categories[0]) if categories else None,
            images=[
                img.get("url_standard") or img.get("url_zoom") or img.get("url_thumbnail")
                for img in as_list(raw.get("images"))
                if isinstance(img, Mapping) and (img.get("url_standard") or img.get("url_zoom") or img.get("url_thumbnail"))
            ],
            attributes={f.get("name"): f.get("value") for f in as_list(raw.get("custom_fields"))
                        if isinstance(f, Mapping) and f.get("name")},
            # 只有一个 base variant 的商品不算多变体
            variants=[
                {
                    "external_id": to_str(v.get("id")),
                    "sku": v.get("sku"),
                    "barcode": v.get("upc"),
                    "price": to_decimal(v.get("price")),
                    "quantity": to_int(v.get("inventory_level"), 0),
                    "weight": to_decimal(v.get("weight"), q="0.001"),
                    "options": [o.get("label") for o in as_list(v.get("option_values")) if isinstance(o, Mapping)],
                }
                for v in variants
            ] if len(variants) > 1 else [],
            condition=str(raw.get("condition") or "new").lower(),
            status="active" if raw.get("is_visible", True) else "draft",
            metadata={
                "type": raw.get("type") or "physical",
                "availability": raw.get("availability") or "available",
                "inventory_tracking": raw.get("inventory_tracking") or "none",
            },
        )

    @staticmethod
    def build_product_payload(product: PlatformProduct) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": product.title,
            "type": product.metadata.get("type") or "physical",
            "description": product.description,
            "price": float(product.price) if product.price is not None else 0,
            "sku": product.sku,
            "weight": float(product.weight) if product.weight is not None else 0,
            "inventory_level": product.quantity,
            "inventory_tracking": "product",
            "is_visible": product.is_active,
        }
        if product.barcode:
            payload["upc"] = product.barcode
        if product.compare_at_price is not None:
            payload["retail_price"] = float(product.compare_at_price)
        if product.category_id and str(product.category_id).isdigit():
            payload["categories"] = [int(product.category_id)]
        if product.images:
            payload["images"] = [
                {"image_url": url, "is_thumbnail": i == 0} for i, url in enumerate(product.images)
            ]
        return payload

    @staticmethod
    def transform_order(raw: Mapping[str, Any]) -> PlatformOrder:
        billing = as_dict(raw.get("billing_address"))
        shipping_addresses = [as_dict(a) for a in _embedded(raw, "shipping_addresses")]
        status_id = to_int(raw.get("status_id"), 0)
        status = ORDER_STATUS_BY_ID.get(status_id, ORDER_STATUS_PENDING)

        line_items = [
            {
                "external_id": to_str(p.get("id")),
                "product_id": to_str(p.get("product_id")),
                "variant_id": to_str(p.get("variant_id")),
                "sku": p.get("sku"),
                "title": p.get("name") or "",
                "quantity": to_int(p.get("quantity"), 1),
                "price": to_money(p.get("base_price")),
                "total": to_money(p.get("total_inc_tax")),
            }
            for p in _embedded(raw, "products")
        ]

        return PlatformOrder(
            external_id=to_str(raw.get("id")) or "",
            order_number=to_str(raw.get("id")),
            status=status,
            fulfillment_status="fulfilled" if status_id in (2, 10) else "unfulfilled",
            payment_status=raw.get("payment_status") or "pending",
            total=to_money(raw.get("total_inc_tax")),
            subtotal=to_money(raw.get("subtotal_ex_tax")),
            shipping_cost=to_money(raw.get("shipping_cost_ex_tax")),
            tax=to_money(raw.get("total_tax")),
            discount=to_money(raw.get("discount_amount")) + to_money(raw.get("coupon_discount")),
            currency=raw.get("currency_code") or "USD",
            customer={
                "external_id": to_str(raw.get("customer_id")),
                "email": billing.get("email"),
                "first_name": billing.get("first_name"),
                "last_name": billing.get("last_name"),
            },
            shipping_address=_address(shipping_addresses[0] if shipping_addresses else billing),
            billing_address=_address(billing),
            line_items=line_items,
            ordered_at=parse_datetime(raw.get("date_created")),
            metadata={
                "status_id": raw.get("status_id"),
                "platform_status": raw.get("status"),
                "payment_method": raw.get("payment_method"),
                "staff_notes": raw.get("staff_notes"),
            },
        )
