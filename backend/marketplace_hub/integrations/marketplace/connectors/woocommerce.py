"""
WooCommerce connector（REST v3）
  - base：{site_url}/wp-json/wc/v3；site_url 取 credentials.site_url，没有就用 shop_domain
  - 鉴权：consumer key / secret 走 HTTP Basic（只支持 HTTPS 站点），不刷新
  - 分页：page + per_page（≤100），总页数在 X-WP-TotalPages；没有该头时满页才有下一页
  - 没有限流头，限流三元组保持零值
"""

from __future__ import annotations

import base64
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from marketplace_hub.utils.clock import ensure_utc

from ..dto import (
    ORDER_STATUS_CANCELLED, ORDER_STATUS_COMPLETED, ORDER_STATUS_PENDING, ORDER_STATUS_PROCESSING,
    ORDER_STATUS_REFUNDED, InventoryUpdate, Page, PlatformOrder, PlatformProduct,
)
from ..normalizers import as_dict, as_list, parse_datetime, to_decimal, to_int, to_money, to_str
from ..platform import Platform
from .base import BasePlatformConnector

logger = logging.getLogger(__name__)


ORDER_STATUS_MAP: Dict[str, str] = {
    "pending": ORDER_STATUS_PENDING,
    "on-hold": ORDER_STATUS_PENDING,
    "failed": ORDER_STATUS_PENDING,
    "processing": ORDER_STATUS_PROCESSING,
    "completed": ORDER_STATUS_COMPLETED,
    "cancelled": ORDER_STATUS_CANCELLED,
    "refunded": ORDER_STATUS_REFUNDED,
}

BATCH_LIMIT = 100


def _address(raw: Mapping[str, Any]) -> Dict[str, Any]:
    if not raw:
        return {}
    return {
        "first_name": raw.get("first_name"),
        "last_name": raw.get("last_name"),
        "company": raw.get("company") or None,
        "address1": raw.get("address_1"),
        "address2": raw.get("address_2"),
        "city": raw.get("city"),
        "state": raw.get("state"),
        "postal_code": raw.get("postcode"),
        "country": raw.get("country"),
        "phone": raw.get("phone") or None,
    }


def _gmt(raw: Mapping[str, Any], key: str) -> Optional[datetime]:
    # *_gmt 字段不带时区后缀
    val = parse_datetime(raw.get(f"{key}_gmt") or raw.get(key))
    return ensure_utc(val) if val is not None else None


class WooCommerceConnector(BasePlatformConnector):

    platform = Platform.WOOCOMMERCE
    max_page_size = 100


    # ---------- plumbing ----------
    def _site_url(self) -> str:
        conn = self._require_connection()
        site = self._require(conn.credential("site_url") or conn.shop_domain, "site url")
        site = str(site).strip().rstrip("/")
        if not site.startswith(("http://", "https://")):
            site = "https://" + site
        return site

    def _base_url(self) -> str:
        return self._site_url() + "/wp-json/wc/v3"

    def _auth_headers(self) -> Dict[str, str]:
        conn = self._require_connection()
        key = self._require(conn.credential("consumer_key") or conn.access_token, "consumer key")
        secret = self._require(conn.credential("consumer_secret"), "consumer secret")
        token = base64.b64encode(f"{key}:{secret}".encode("utf-8")).decode()
        return {"Authorization": f"Basic {token}", "Content-Type": "application/json"}

    def _ping(self) -> bool:
        result = self.request("GET", "/system_status", op="system_status.get")
        return bool(result.get("environment"))

    @staticmethod
    def _next_page(result, page: int, count: int, limit: int) -> Optional[str]:
        total_pages = to_int((result.headers or {}).get("X-WP-TotalPages"))
        if total_pages is None:
            return str(page + 1) if count >= limit else None
        return str(page + 1) if page < total_pages else None


    # ---------- products ----------
    def get_products(self, limit: int = 100, cursor: Optional[str] = None) -> Page[PlatformProduct]:
        page = to_int(cursor, 1) or 1
        per_page = self._page_size(limit)
        result = self.request("GET", "/products", params={"page": page, "per_page": per_page}, op="products.list")
        if not result.ok:
            return Page.failed(result.error)
        raw_items = as_list(result.data)
        return self._build_page(raw_items, self.transform_product,
                                self._next_page(result, page, len(raw_items), per_page), kind="product")

    def get_product(self, external_id: str) -> Optional[PlatformProduct]:
        result = self.request("GET", f"/products/{external_id}", op="products.get")
        if not result.ok or not isinstance(result.data, Mapping):
            return None
        return self.transform_product(result.data)

    def create_product(self, product: PlatformProduct) -> Optional[str]:
        result = self.request("POST", "/products", json=self.build_product_payload(product), op="products.create")
        return to_str(result.get("id"))

    def update_product(self, external_id: str, product: PlatformProduct) -> bool:
        return self.request("PUT", f"/products/{external_id}", json=self.build_product_payload(product),
                            op="products.update").ok

    def delete_product(self, external_id: str) -> bool:
        # 不带 force 只是进回收站
        return self.request("DELETE", f"/products/{external_id}", params={"force": "true"},
                            op="products.delete").ok


    # ---------- orders ----------
    def _get_orders(self, since, limit: int, cursor: Optional[str]) -> Page[PlatformOrder]:
        page = to_int(cursor, 1) or 1
        params: Dict[str, Any] = {"page": page, "per_page": limit, "orderby": "date", "order": "asc"}
        since_dt = since if isinstance(since, datetime) else parse_datetime(since)
        if since_dt is not None:
            params["after"] = ensure_utc(since_dt).strftime("%Y-%m-%dT%H:%M:%S")
            params["dates_are_gmt"] = "true"
        result = self.request("GET", "/orders", params=params, op="orders.list")
        if not result.ok:
            return Page.failed(result.error)
        raw_orders = as_list(result.data)
        return self._build_page(raw_orders, self.transform_order,
                                self._next_page(result, page, len(raw_orders), limit), kind="order")

    def get_order(self, external_id: str) -> Optional[PlatformOrder]:
        result = self.request("GET", f"/orders/{external_id}", op="orders.get")
        if not result.ok or not isinstance(result.data, Mapping):
            return None
        return self.transform_order(result.data)

    def fulfill_order(self, external_id: str, fulfillment_data: Mapping[str, Any]) -> bool:
        """没有发货对象：tracking 写成客户可见的订单备注，再把订单改成 completed。"""
        tracking = fulfillment_data.get("tracking_number")
        if tracking:
            note = f"Order shipped via {fulfillment_data.get('carrier') or 'carrier'}. Tracking: {tracking}"
            noted = self.request("POST", f"/orders/{external_id}/notes",
                                 json={"note": note, "customer_note": True}, op="orders.note")
            if not noted.ok:
                return False
        return self.request("PUT", f"/orders/{external_id}", json={"status": "completed"},
                            op="orders.complete").ok


    # ---------- inventory ----------
    def _stock_path(self, update: InventoryUpdate) -> str:
        path = f"/products/{update.external_id}"
        if update.external_variant_id:
            path += f"/variations/{update.external_variant_id}"
        return path

    def _update_inventory(self, update: InventoryUpdate) -> bool:
        if not update.external_id:
            self._error(f"WooCommerce inventory update for {update.sku!r} needs external_id (product id)")
            return False

        path = self._stock_path(update)
        current = None
        if update.is_adjustment:
            existing = self.request("GET", path, op="inventory.read")
            current = to_int(existing.get("stock_quantity"))
        target = self._target_quantity(update, current)
        if target is None:
            return False
        return self.request("PUT", path, json={"manage_stock": True, "stock_quantity": target},
                            op="inventory.write").ok

    def bulk_update_inventory(self, updates: Iterable[InventoryUpdate]) -> Dict[str, bool]:
        """
        简单商品的绝对值写入走 products/batch（每批 ≤100），按响应里的逐条结果判成败；
        adjust / 变体 / 缺 product id 的条目逐条写。
        """
        results: Dict[str, bool] = {}
        batched: List[InventoryUpdate] = []
        for update in updates:
            key = update.sku or update.external_variant_id or update.external_id or ""
            if update.external_id and not update.external_variant_id and not update.is_adjustment:
                batched.append(update)
            else:
                results[key] = self.update_inventory(update)

        for start in range(0, len(batched), BATCH_LIMIT):
            chunk = batched[start:start + BATCH_LIMIT]
            payload = {"update": [
                {"id": to_int(u.external_id, 0) or u.external_id, "manage_stock": True, "stock_quantity": u.apply(0)}
                for u in chunk
            ]}
            result = self.request("POST", "/products/batch", json=payload, op="inventory.batch")
            accepted = {
                to_str(r.get("id")) for r in as_list(result.get("update"))
                if isinstance(r, Mapping) and not r.get("error")
            }
            logger.info("marketplace.inventory.batch platform=%s size=%s accepted=%s",
                        self.platform.value, len(chunk), len(accepted))
            for u in chunk:
                ok = result.ok and u.external_id in accepted
                if result.ok and not ok:
                    self._error(f"WooCommerce batch rejected stock update for product {u.external_id}")
                results[u.sku or u.external_id or ""] = ok
        return results


    # ---------- catalog ----------
    def get_categories(self) -> List[Dict[str, Any]]:
        result = self.request("GET", "/products/categories", params={"per_page": 100}, op="categories.list")
        return [
            {
                "id": to_str(c.get("id")),
                "name": c.get("name"),
                "slug": c.get("slug"),
                "parent_id": to_str(c.get("parent")) if c.get("parent") else None,
            }
            for c in as_list(result.data) if isinstance(c, Mapping)
        ]

    def get_category_attributes(self, category_id: str) -> Dict[str, Any]:
        # 属性是全站的，不挂类目
        result = self.request("GET", "/products/attributes", op="attributes.list")
        return {
            "attributes": [
                {"id": to_str(a.get("id")), "name": a.get("name"), "slug": a.get("slug"), "type": a.get("type")}
                for a in as_list(result.data) if isinstance(a, Mapping)
            ]
        }


    # ---------- transforms ----------
    @staticmethod
    def transform_product(raw: Mapping[str, Any]) -> PlatformProduct:
        categories = [c for c in as_list(raw.get("categories")) if isinstance(c, Mapping)]
        sale_price = to_decimal(raw.get("sale_price"))
        regular_price = to_decimal(raw.get("regular_price"))
        return PlatformProduct(
            external_id=to_str(raw.get("id")),
            title=raw.get("name") or "",
            description=raw.get("description") or "",
            sku=raw.get("sku") or None,
            price=to_decimal(raw.get("price")) if raw.get("price") not in (None, "") else regular_price,
            compare_at_price=regular_price if sale_price is not None else None,
            quantity=to_int(raw.get("stock_quantity"), 0),
            weight=to_decimal(raw.get("weight"), q="0.001"),
            weight_unit="kg",
            category=categories[0].get("name") if categories else None,
            category_id=to_str(categories[0].get("id")) if categories else None,
            images=[img.get("src") for img in as_list(raw.get("images"))
                    if isinstance(img, Mapping) and img.get("src")],
            attributes={a.get("name"): as_list(a.get("options")) for a in as_list(raw.get("attributes"))
                        if isinstance(a, Mapping) and a.get("name")},
            status="active" if raw.get("status") == "publish" else "draft",
            metadata={
                "type": raw.get("type") or "simple",
                "permalink": raw.get("permalink"),
                "stock_status": raw.get("stock_status"),
                "variation_ids": [to_str(v) for v in as_list(raw.get("variations"))],
            },
        )

    @staticmethod
    def build_product_payload(product: PlatformProduct) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": product.title,
            "type": product.metadata.get("type") or "simple",
            "description": product.description,
            "sku": product.sku or "",
            "regular_price": str(product.price) if product.price is not None else "",
            "manage_stock": True,
            "stock_quantity": product.quantity,
            "status": "publish" if product.is_active else "draft",
        }
        if product.weight is not None:
            payload["weight"] = str(product.weight)
        if product.images:
            payload["images"] = [{"src": url} for url in product.images]
        if product.category_id and str(product.category_id).isdigit():
            payload["categories"] = [{"id": int(product.category_id)}]
        return payload

    @staticmethod
    def transform_order(raw: Mapping[str, Any]) -> PlatformOrder:
        billing = as_dict(raw.get("billing"))
        shipping = as_dict(raw.get("shipping"))
        platform_status = str(raw.get("status") or "pending")

        line_items = [
            {
                "external_id": to_str(i.get("id")),
                "product_id": to_str(i.get("product_id")),
                "variant_id": to_str(i.get("variation_id")) if i.get("variation_id") else None,
                "sku": i.get("sku") or None,
                "title": i.get("name") or "",
                "quantity": to_int(i.get("quantity"), 1),
                "price": to_money(i.get("price")),
                "total": to_money(i.get("total")),
            }
            for i in as_list(raw.get("line_items")) if isinstance(i, Mapping)
        ]
        # 订单本身没有 subtotal，按行项目折前小计相加
        subtotal = sum(
            (to_money(i.get("subtotal")) for i in as_list(raw.get("line_items")) if isinstance(i, Mapping)),
            to_money(None),
        )

        if platform_status == "refunded":
            payment_status = "refunded"
        elif raw.get("date_paid") or raw.get("date_paid_gmt"):
            payment_status = "paid"
        else:
            payment_status = "pending"

        return PlatformOrder(
            external_id=to_str(raw.get("id")) or "",
            order_number=to_str(raw.get("number")) or to_str(raw.get("id")),
            status=ORDER_STATUS_MAP.get(platform_status, ORDER_STATUS_PENDING),
            fulfillment_status="fulfilled" if platform_status == "completed" else "unfulfilled",
            payment_status=payment_status,
            total=to_money(raw.get("total")),
            subtotal=subtotal,
            shipping_cost=to_money(raw.get("shipping_total")),
            tax=to_money(raw.get("total_tax")),
            discount=to_money(raw.get("discount_total")),
            currency=raw.get("currency") or "USD",
            customer={
                "external_id": to_str(raw.get("customer_id")) if raw.get("customer_id") else None,
                "email": billing.get("email"),
                "first_name": billing.get("first_name"),
                "last_name": billing.get("last_name"),
                "phone": billing.get("phone") or None,
            },
            shipping_address=_address(shipping),
            billing_address=_address(billing),
            line_items=line_items,
            ordered_at=_gmt(raw, "date_created"),
            metadata={
                "platform_status": platform_status,
                "payment_method": raw.get("payment_method_title") or raw.get("payment_method"),
                "customer_note": raw.get("customer_note") or None,
            },
        )
