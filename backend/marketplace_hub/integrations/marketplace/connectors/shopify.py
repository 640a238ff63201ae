"""
Shopify REST Admin API connector
  - base: https://{shop}/admin/api/{version}，鉴权头 X-Shopify-Access-Token（离线 token 不过期）
  - 限流头 X-Shopify-Shop-Api-Call-Limit: "used/total"（漏桶）
  - 分页：Link 头里的 page_info 游标；带 page_info 时只能再带 limit
  - 库存：variant → inventory_item_id → location → inventory_levels/set|adjust（三步算一个操作）
  - 授权：authorize_url() 拼安装链接，exchange_code() 用回调里的 code 换离线 token
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import parse_qs, urlencode, urlparse

from requests.utils import parse_header_links

from marketplace_hub.core.config import secret_value, settings

from ..dto import (
    ORDER_STATUS_CANCELLED, ORDER_STATUS_COMPLETED, ORDER_STATUS_PENDING,
    InventoryUpdate, Page, PlatformOrder, PlatformProduct, RateLimitStatus,
)
from ..errors import ConnectorConfigError
from ..normalizers import as_dict, as_list, parse_datetime, pick, to_decimal, to_int, to_money, to_str
from ..platform import Platform
from .base import BasePlatformConnector

logger = logging.getLogger(__name__)


CALL_LIMIT_HEADER = "X-Shopify-Shop-Api-Call-Limit"

# Shopify 没有真正的类目 API，类目属性给一组常用 option
DEFAULT_CATEGORY_ATTRIBUTES: Dict[str, Any] = {
    "options": [
        {"name": "Size", "type": "text", "required": False},
        {"name": "Color", "type": "text", "required": False},
        {"name": "Material", "type": "text", "required": False},
    ],
}


def parse_call_limit(value: Optional[str]) -> Optional[RateLimitStatus]:
    """ "32/40" → remaining=8, limit=40 """
    if not value or "/" not in value:
        return None
    used_s, total_s = value.split("/", 1)
    used, total = int(used_s.strip()), int(total_s.strip())
    return RateLimitStatus(remaining=max(0, total - used), limit=total)


def next_page_info(link_header: Optional[str]) -> Optional[str]:
    if not link_header:
        return None
    for link in parse_header_links(link_header):
        if link.get("rel") == "next" and link.get("url"):
            values = parse_qs(urlparse(link["url"]).query).get("page_info")
            if values:
                return values[0]
    return None


def normalize_shop_domain(shop: Optional[str]) -> str:
    """ "https://Demo.myshopify.com/" / "demo" → "demo.myshopify.com" """
    shop = (shop or "").strip().lower()
    shop = shop.replace("https://", "").replace("http://", "").rstrip("/")
    if shop and not shop.endswith(".myshopify.com"):
        shop += ".myshopify.com"
    return shop


def derive_order_status(raw: Mapping[str, Any]) -> str:
    """状态是推导出来的：cancelled_at > closed_at > pending。"""
    if raw.get("cancelled_at"):
        return ORDER_STATUS_CANCELLED
    if raw.get("closed_at"):
        return ORDER_STATUS_COMPLETED
    return ORDER_STATUS_PENDING


class ShopifyConnector(BasePlatformConnector):

    platform = Platform.SHOPIFY
    max_page_size = 250

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.max_page_size = settings.SHOPIFY_MAX_PAGE_SIZE
        self.api_version = settings.SHOPIFY_API_VERSION


    # ---------- plumbing ----------
    def _base_url(self) -> str:
        conn = self._require_connection()
        shop = (conn.shop_domain or "").strip().rstrip("/")
        if not shop:
            raise ConnectorConfigError("Shopify: missing shop_domain")
        shop = shop.replace("https://", "").replace("http://", "")
        return f"https://{shop}/admin/api/{self.api_version}"

    def _auth_headers(self) -> Dict[str, str]:
        token = self._require(self._require_connection().access_token, "access token")
        return {"X-Shopify-Access-Token": token, "Content-Type": "application/json"}

    def _parse_rate_limit_headers(self, headers: Mapping[str, str]) -> Optional[RateLimitStatus]:
        return parse_call_limit(headers.get(CALL_LIMIT_HEADER))

    # test ✅
    def _ping(self) -> bool:
        result = self.request("GET", "/shop.json", op="shop.get")
        return bool(result.get("shop"))


    # ---------- OAuth ----------
    def authorize_url(self, state: str, redirect_uri: str) -> str:
        shop = normalize_shop_domain(self._require_connection().shop_domain)
        query = urlencode({
            "client_id": self._require(settings.SHOPIFY_API_KEY, "app api key (SHOPIFY_API_KEY)"),
            "scope": settings.SHOPIFY_SCOPES,
            "redirect_uri": redirect_uri,
            "state": state,
        })
        return f"https://{shop}/admin/oauth/authorize?{query}"

    def exchange_code(self, code: str) -> bool:
        """回调 code → 离线 access token，写回 connection（scope 存进 credentials）。"""
        conn = self._require_connection()
        client_id = settings.SHOPIFY_API_KEY
        client_secret = secret_value(settings.SHOPIFY_API_SECRET)
        if not client_id or not client_secret:
            self._error("Shopify: app api key / secret are not configured")
            return False
        shop = normalize_shop_domain(conn.shop_domain)
        if not shop:
            self._error("Shopify: missing shop_domain")
            return False

        result = self.request(
            "POST", f"https://{shop}/admin/oauth/access_token",
            json={"client_id": client_id, "client_secret": client_secret, "code": code},
            authenticate=False, allow_refresh=False, op="oauth.access_token",
        )
        if not self._apply_token_response(result):
            return False
        # JSON 列整体重新赋值，ORM 才能感知变更
        conn.credentials = {**(conn.credentials or {}), "scope": result.get("scope")}
        return True


    # ---------- products ----------
    def get_products(self, limit: int = 250, cursor: Optional[str] = None) -> Page[PlatformProduct]:
        params: Dict[str, Any] = {"limit": self._page_size(limit)}
        if cursor:
            params["page_info"] = cursor
        result = self.request("GET", "/products.json", params=params, op="products.list")
        if not result.ok:
            return Page.failed(result.error)
        return self._build_page(as_list(result.get("products")), self.transform_product,
                                next_page_info(result.headers.get("Link")), kind="product")

    def get_product(self, external_id: str) -> Optional[PlatformProduct]:
        result = self.request("GET", f"/products/{external_id}.json", op="products.get")
        raw = result.get("product")
        return self.transform_product(raw) if raw else None

    def create_product(self, product: PlatformProduct) -> Optional[str]:
        result = self.request("POST", "/products.json", json={"product": self.build_product_payload(product)},
                              op="products.create")
        return to_str(result.get("product.id"))

    def update_product(self, external_id: str, product: PlatformProduct) -> bool:
        payload = {"id": external_id, **self.build_product_payload(product)}
        result = self.request("PUT", f"/products/{external_id}.json", json={"product": payload},
                              op="products.update")
        return result.ok

    def delete_product(self, external_id: str) -> bool:
        return self.request("DELETE", f"/products/{external_id}.json", op="products.delete").ok


    # ---------- orders ----------
    def _get_orders(self, since, limit: int, cursor: Optional[str]) -> Page[PlatformOrder]:
        params: Dict[str, Any] = {"limit": limit}
        if cursor:
            # 续页：page_info 不能和 status / created_at_min 同时出现
            params["page_info"] = cursor
        else:
            params["status"] = "any"
            if since is not None:
                params["created_at_min"] = since.isoformat() if hasattr(since, "isoformat") else str(since)
        result = self.request("GET", "/orders.json", params=params, op="orders.list")
        if not result.ok:
            return Page.failed(result.error)
        return self._build_page(as_list(result.get("orders")), self.transform_order,
                                next_page_info(result.headers.get("Link")), kind="order")

    def get_order(self, external_id: str) -> Optional[PlatformOrder]:
        result = self.request("GET", f"/orders/{external_id}.json", op="orders.get")
        raw = result.get("order")
        return self.transform_order(raw) if raw else None

    def fulfill_order(self, external_id: str, fulfillment_data: Mapping[str, Any]) -> bool:
        # 1) 找 fulfillment order
        fo = self.request("GET", f"/orders/{external_id}/fulfillment_orders.json", op="fulfillment_orders.list")
        if not fo.ok:
            return False
        fo_id = fo.get("fulfillment_orders.0.id")
        if fo_id is None:
            self._error(f"order {external_id} has no fulfillment order")
            return False

        # 2) 创建 fulfillment
        payload = {
            "fulfillment": {
                "line_items_by_fulfillment_order": [{"fulfillment_order_id": fo_id}],
                "tracking_info": {
                    "number": fulfillment_data.get("tracking_number"),
                    "company": fulfillment_data.get("carrier"),
                    "url": fulfillment_data.get("tracking_url"),
                },
                "notify_customer": bool(fulfillment_data.get("notify_customer", True)),
            }
        }
        return self.request("POST", "/fulfillments.json", json=payload, op="fulfillments.create").ok


    # ---------- inventory ----------
    def _update_inventory(self, update: InventoryUpdate) -> bool:
        if not update.external_variant_id:
            self._error(f"Shopify inventory update for {update.sku!r} needs external_variant_id")
            return False

        # 1) variant → inventory_item_id
        variant = self.request("GET", f"/variants/{update.external_variant_id}.json", op="variants.get")
        inventory_item_id = variant.get("variant.inventory_item_id")
        if not variant.ok or inventory_item_id is None:
            if variant.ok:
                self._error(f"variant {update.external_variant_id} has no inventory_item_id")
            return False

        # 2) location：显式 > 连接设置 > 店铺第一个 location
        location_id = update.location_id or self._require_connection().setting("location_id")
        if not location_id:
            locations = self.request("GET", "/locations.json", op="locations.list")
            location_id = locations.get("locations.0.id")
            if location_id is None:
                if locations.ok:
                    self._error("shop has no locations")
                return False

        # 3) set / adjust
        if update.is_adjustment:
            path = "/inventory_levels/adjust.json"
            body = {"location_id": location_id, "inventory_item_id": inventory_item_id,
                    "available_adjustment": update.quantity}
        else:
            path = "/inventory_levels/set.json"
            body = {"location_id": location_id, "inventory_item_id": inventory_item_id,
                    "available": update.quantity}
        return self.request("POST", path, json=body, op="inventory_levels.write").ok


    # ---------- catalog ----------
    def get_categories(self) -> List[Dict[str, Any]]:
        result = self.request("GET", "/custom_collections.json", op="custom_collections.list")
        return [
            {"id": to_str(c.get("id")), "name": c.get("title"), "handle": c.get("handle")}
            for c in as_list(result.get("custom_collections"))
        ]

    def get_category_attributes(self, category_id: str) -> Dict[str, Any]:
        return {"options": [dict(o) for o in DEFAULT_CATEGORY_ATTRIBUTES["options"]]}


    # ---------- transforms ----------
    @staticmethod
    def transform_product(raw: Mapping[str, Any]) -> PlatformProduct:
        variants = [as_dict(v) for v in as_list(raw.get("variants"))]
        first = variants[0] if variants else {}
        multi = len(variants) > 1

        out_variants = [
            {
                "external_id": to_str(v.get("id")),
                "sku": v.get("sku"),
                "barcode": v.get("barcode"),
                "price": to_decimal(v.get("price")),
                "compare_at_price": to_decimal(v.get("compare_at_price")),
                "quantity": to_int(v.get("inventory_quantity"), 0),
                "weight": to_decimal(v.get("weight"), q="0.001"),
                "options": [o for o in (v.get("option1"), v.get("option2"), v.get("option3")) if o],
                "inventory_item_id": to_str(v.get("inventory_item_id")),
            }
            for v in variants
        ] if multi else []

        quantity = (sum(v["quantity"] for v in out_variants) if multi
                    else to_int(first.get("inventory_quantity"), 0))

        metadata: Dict[str, Any] = {
            "handle": raw.get("handle"),
            "tags": raw.get("tags"),
            "published_at": raw.get("published_at"),
        }
        if not multi and first:
            # 单变体：库存更新仍然需要 variant / inventory item
            metadata["variant_id"] = to_str(first.get("id"))
            metadata["inventory_item_id"] = to_str(first.get("inventory_item_id"))

        return PlatformProduct(
            external_id=to_str(raw.get("id")),
            title=raw.get("title") or "",
            description=raw.get("body_html") or "",
            sku=first.get("sku") or None,
            barcode=first.get("barcode") or None,
            price=to_decimal(first.get("price")),
            compare_at_price=to_decimal(first.get("compare_at_price")),
            quantity=quantity,
            weight=to_decimal(first.get("weight"), q="0.001"),
            weight_unit=first.get("weight_unit") or "lb",
            brand=raw.get("vendor") or None,
            category=raw.get("product_type") or None,
            images=[img.get("src") for img in as_list(raw.get("images")) if isinstance(img, Mapping) and img.get("src")],
            attributes={o.get("name"): o.get("values", []) for o in as_list(raw.get("options"))
                        if isinstance(o, Mapping) and o.get("name")},
            variants=out_variants,
            status=raw.get("status") or "active",
            metadata=metadata,
        )

    @staticmethod
    def build_product_payload(product: PlatformProduct) -> Dict[str, Any]:
        variant: Dict[str, Any] = {
            "sku": product.sku,
            "barcode": product.barcode,
            "price": str(product.price) if product.price is not None else None,
            "inventory_quantity": product.quantity,
            "inventory_management": "shopify",
        }
        if product.compare_at_price is not None:
            variant["compare_at_price"] = str(product.compare_at_price)
        if product.weight is not None:
            variant["weight"] = float(product.weight)
            variant["weight_unit"] = product.weight_unit

        payload: Dict[str, Any] = {
            "title": product.title,
            "body_html": product.description,
            "vendor": product.brand,
            "product_type": product.category,
            "status": "active" if product.is_active else "draft",
            "variants": [variant],
        }
        if product.images:
            payload["images"] = [{"src": url} for url in product.images]
        tags = product.metadata.get("tags")
        if tags:
            payload["tags"] = tags
        return payload

    @staticmethod
    def transform_order(raw: Mapping[str, Any]) -> PlatformOrder:
        customer = as_dict(raw.get("customer"))
        shipping = pick(raw, "total_shipping_price_set.shop_money.amount")
        if shipping is None:
            shipping = sum((to_money(l.get("price")) for l in as_list(raw.get("shipping_lines"))
                            if isinstance(l, Mapping)), to_money(None))

        line_items = []
        for item in as_list(raw.get("line_items")):
            item = as_dict(item)
            price = to_money(item.get("price"))
            qty = to_int(item.get("quantity"), 0)
            line_items.append({
                "external_id": to_str(item.get("id")),
                "product_id": to_str(item.get("product_id")),
                "variant_id": to_str(item.get("variant_id")),
                "sku": item.get("sku"),
                "title": item.get("title"),
                "quantity": qty,
                "price": price,
                "total": price * qty,
            })

        return PlatformOrder(
            external_id=to_str(raw.get("id")) or "",
            order_number=to_str(pick(raw, "order_number", "name")),
            status=derive_order_status(raw),
            fulfillment_status=raw.get("fulfillment_status") or "unfulfilled",
            payment_status=raw.get("financial_status") or "pending",
            total=to_money(raw.get("total_price")),
            subtotal=to_money(raw.get("subtotal_price")),
            shipping_cost=to_money(shipping),
            tax=to_money(raw.get("total_tax")),
            discount=to_money(raw.get("total_discounts")),
            currency=raw.get("currency") or "USD",
            customer={
                "external_id": to_str(customer.get("id")),
                "email": customer.get("email") or raw.get("email"),
                "first_name": customer.get("first_name"),
                "last_name": customer.get("last_name"),
                "phone": customer.get("phone"),
            },
            shipping_address=as_dict(raw.get("shipping_address")),
            billing_address=as_dict(raw.get("billing_address")),
            line_items=line_items,
            ordered_at=parse_datetime(raw.get("created_at")),
            metadata={
                "note": raw.get("note"),
                "tags": raw.get("tags"),
                "source_name": raw.get("source_name"),
            },
        )
