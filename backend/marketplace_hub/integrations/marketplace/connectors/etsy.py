"""
Etsy Open API v3 connector
  - 每个请求都要 x-api-key（app keystring）+ Bearer user token（1 小时，refresh_token 换新，refresh_token 会轮换）
  - 限流头 x-remaining-today / x-limit-per-day
  - 金额是 {amount, divisor, currency_code}；时间是 epoch 秒
  - listing 的价格/库存在 /inventory（products → offerings），只能整体 PUT 回去
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from marketplace_hub.core.config import settings

from ..dto import (
    ORDER_STATUS_CANCELLED, ORDER_STATUS_COMPLETED, ORDER_STATUS_PENDING, ORDER_STATUS_PROCESSING,
    ORDER_STATUS_REFUNDED, InventoryUpdate, Page, PlatformOrder, PlatformProduct, RateLimitStatus,
)
from ..errors import ConnectorConfigError
from ..normalizers import (
    as_dict, as_list, money_from_minor, parse_datetime, pick, to_decimal, to_int, to_money, to_str,
)
from ..platform import Platform
from .base import BasePlatformConnector

logger = logging.getLogger(__name__)


USER_TOKEN_TTL_SEC = 3600

RECEIPT_STATUS_MAP: Dict[str, str] = {
    "canceled": ORDER_STATUS_CANCELLED,
    "fully refunded": ORDER_STATUS_REFUNDED,
    "partially refunded": ORDER_STATUS_REFUNDED,
    "completed": ORDER_STATUS_COMPLETED,
    "paid": ORDER_STATUS_PROCESSING,
    "open": ORDER_STATUS_PENDING,
    "payment processing": ORDER_STATUS_PENDING,
}


def money(raw: Any):
    """{amount: 1999, divisor: 100} → Decimal("19.99")；缺失为 None。"""
    raw = as_dict(raw)
    return money_from_minor(raw.get("amount"), raw.get("divisor"))


def flatten_taxonomy(nodes: List[Any], out: Optional[List[Dict[str, Any]]] = None) -> List[Dict[str, Any]]:
    out = [] if out is None else out
    for node in nodes:
        node = as_dict(node)
        out.append({
            "id": to_str(node.get("id")),
            "name": node.get("name"),
            "parent_id": to_str(node.get("parent_id")),
            "full_path": [to_str(i) for i in as_list(node.get("full_path_taxonomy_ids"))],
        })
        flatten_taxonomy(as_list(node.get("children")), out)
    return out


class EtsyConnector(BasePlatformConnector):

    platform = Platform.ETSY
    max_page_size = 100
    supports_token_refresh = True


    # ---------- plumbing ----------
    def _base_url(self) -> str:
        self._require_connection()
        return settings.ETSY_BASE_URL

    def _keystring(self) -> str:
        return self._require(self._require_connection().credential("api_key") or settings.ETSY_KEYSTRING,
                             "api keystring")

    def _shop_id(self) -> str:
        conn = self._require_connection()
        return str(self._require(conn.external_store_id or conn.credential("shop_id"), "shop id"))

    def _auth_headers(self) -> Dict[str, str]:
        token = self._require(self._require_connection().access_token, "access token")
        return {
            "x-api-key": self._keystring(),
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    def _parse_rate_limit_headers(self, headers: Mapping[str, str]) -> Optional[RateLimitStatus]:
        remaining = to_int(headers.get("x-remaining-today"))
        limit = to_int(headers.get("x-limit-per-day"))
        if remaining is None or limit is None:
            return None
        return RateLimitStatus(remaining=remaining, limit=limit)

    def _refresh_tokens(self) -> bool:
        conn = self._require_connection()
        try:
            keystring = self._keystring()
        except ConnectorConfigError as e:
            self._error(str(e))
            return False
        if not conn.refresh_token:
            self._error("Etsy: refresh_token missing")
            return False
        result = self.request(
            "POST", settings.ETSY_TOKEN_URL,
            data={"grant_type": "refresh_token", "client_id": keystring, "refresh_token": conn.refresh_token},
            authenticate=False, allow_refresh=False, op="oauth.refresh",
        )
        return self._apply_token_response(result, default_ttl=USER_TOKEN_TTL_SEC)

    def _shop_path(self, suffix: str = "") -> Optional[str]:
        try:
            return f"/application/shops/{self._shop_id()}{suffix}"
        except ConnectorConfigError as e:
            self._error(str(e))
            return None

    def _ping(self) -> bool:
        path = self._shop_path()
        if path is None:
            return False
        return bool(self.request("GET", path, op="shops.get").get("shop_id"))


    # ---------- products ----------
    def get_products(self, limit: int = 250, cursor: Optional[str] = None) -> Page[PlatformProduct]:
        path = self._shop_path("/listings")
        if path is None:
            return Page.failed(self._last_error)
        size = self._page_size(limit)
        offset = to_int(cursor, 0) or 0
        params = {"limit": size, "offset": offset, "includes": "Images",
                  "state": self._require_connection().setting("listing_state", "active")}
        result = self.request("GET", path, params=params, op="listings.list")
        if not result.ok:
            return Page.failed(result.error)
        raw = as_list(result.get("results"))
        next_offset = offset + size
        next_cursor = str(next_offset) if raw and next_offset < to_int(result.get("count"), 0) else None
        return self._build_page(raw, self.transform_product, next_cursor, kind="listing")

    def get_product(self, external_id: str) -> Optional[PlatformProduct]:
        result = self.request("GET", f"/application/listings/{external_id}", params={"includes": "Images"},
                              op="listings.get")
        return self.transform_product(result.data) if result.ok and result.data else None

    def create_product(self, product: PlatformProduct) -> Optional[str]:
        path = self._shop_path("/listings")
        if path is None:
            return None
        body = self.build_listing_payload(product, self._require_connection().settings or {})
        result = self.request("POST", path, json=body, op="listings.create")
        return to_str(result.get("listing_id"))

    def update_product(self, external_id: str, product: PlatformProduct) -> bool:
        path = self._shop_path(f"/listings/{external_id}")
        if path is None:
            return False
        body: Dict[str, Any] = {
            "title": product.title,
            "description": product.description,
            "state": "active" if product.is_active else "inactive",
        }
        if product.category_id:
            body["taxonomy_id"] = to_int(product.category_id)
        tags = product.metadata.get("tags")
        if tags:
            body["tags"] = list(tags)
        if not self.request("PATCH", path, json=body, op="listings.update").ok:
            return False
        # 价格和数量不在 listing 上，要改 inventory
        return self._write_offerings(external_id, quantity=product.quantity, price=product.price)

    def delete_product(self, external_id: str) -> bool:
        return self.request("DELETE", f"/application/listings/{external_id}", op="listings.delete").ok


    # ---------- orders (receipts) ----------
    def _get_orders(self, since, limit: int, cursor: Optional[str]) -> Page[PlatformOrder]:
        path = self._shop_path("/receipts")
        if path is None:
            return Page.failed(self._last_error)
        offset = to_int(cursor, 0) or 0
        params: Dict[str, Any] = {"limit": limit, "offset": offset}
        if since is not None:
            since_dt = since if isinstance(since, datetime) else parse_datetime(since)
            if since_dt is not None:
                params["min_created"] = int(since_dt.timestamp())
        result = self.request("GET", path, params=params, op="receipts.list")
        if not result.ok:
            return Page.failed(result.error)
        raw = as_list(result.get("results"))
        next_offset = offset + limit
        next_cursor = str(next_offset) if raw and next_offset < to_int(result.get("count"), 0) else None
        return self._build_page(raw, self.transform_order, next_cursor, kind="receipt")

    def get_order(self, external_id: str) -> Optional[PlatformOrder]:
        path = self._shop_path(f"/receipts/{external_id}")
        if path is None:
            return None
        result = self.request("GET", path, op="receipts.get")
        return self.transform_order(result.data) if result.ok and result.data else None

    def fulfill_order(self, external_id: str, fulfillment_data: Mapping[str, Any]) -> bool:
        path = self._shop_path(f"/receipts/{external_id}/tracking")
        if path is None:
            return False
        body = {
            "tracking_code": fulfillment_data.get("tracking_number") or "",
            "carrier_name": fulfillment_data.get("carrier") or "other",
            "send_bcc": bool(fulfillment_data.get("notify_customer", False)),
        }
        return self.request("POST", path, json=body, op="receipts.tracking").ok


    # ---------- inventory ----------
    def _update_inventory(self, update: InventoryUpdate) -> bool:
        if not update.external_id:
            self._error(f"Etsy inventory update for {update.sku!r} needs external_id (listing id)")
            return False
        return self._write_offerings(update.external_id, update=update)

    def _write_offerings(self, listing_id: str, *, update: Optional[InventoryUpdate] = None,
                         quantity: Optional[int] = None, price=None) -> bool:
        """GET inventory → 改目标 product 的第一个 offering → 整体 PUT 回去。"""
        current = self.request("GET", f"/application/listings/{listing_id}/inventory", op="inventory.get")
        if not current.ok:
            return False
        products = [as_dict(p) for p in as_list(current.get("products"))]
        if not products:
            self._error(f"listing {listing_id} has no inventory products")
            return False

        target = products[0]
        if update is not None and (update.sku or update.external_variant_id):
            for p in products:
                if (update.external_variant_id and to_str(p.get("product_id")) == update.external_variant_id) \
                        or (update.sku and p.get("sku") == update.sku):
                    target = p
                    break

        body_products = []
        for p in products:
            offerings = []
            for i, o in enumerate(as_list(p.get("offerings"))):
                o = as_dict(o)
                qty = to_int(o.get("quantity"), 0)
                offer_price = money(o.get("price"))
                if p is target and i == 0:
                    if update is not None:
                        new_qty = self._target_quantity(update, qty)
                        if new_qty is None:
                            return False
                        qty = new_qty
                    elif quantity is not None:
                        qty = max(0, quantity)
                    if price is not None:
                        offer_price = price
                offerings.append({
                    "price": float(offer_price) if offer_price is not None else 0.0,
                    "quantity": qty,
                    "is_enabled": bool(o.get("is_enabled", True)),
                })
            body_products.append({
                "sku": p.get("sku") or "",
                "property_values": [
                    {
                        "property_id": v.get("property_id"),
                        "value_ids": v.get("value_ids") or [],
                        "property_name": v.get("property_name"),
                        "values": v.get("values") or [],
                    }
                    for v in as_list(p.get("property_values")) if isinstance(v, Mapping)
                ],
                "offerings": offerings,
            })

        body = {
            "products": body_products,
            "price_on_property": current.get("price_on_property", default=[]),
            "quantity_on_property": current.get("quantity_on_property", default=[]),
            "sku_on_property": current.get("sku_on_property", default=[]),
        }
        return self.request("PUT", f"/application/listings/{listing_id}/inventory", json=body,
                            op="inventory.put").ok


    # ---------- catalog ----------
    def get_categories(self) -> List[Dict[str, Any]]:
        result = self.request("GET", "/application/seller-taxonomy/nodes", op="taxonomy.nodes")
        return flatten_taxonomy(as_list(result.get("results")))

    def get_category_attributes(self, category_id: str) -> Dict[str, Any]:
        result = self.request("GET", f"/application/seller-taxonomy/nodes/{category_id}/properties",
                              op="taxonomy.properties")
        properties = []
        for prop in as_list(result.get("results")):
            prop = as_dict(prop)
            properties.append({
                "id": to_str(prop.get("property_id")),
                "name": prop.get("display_name") or prop.get("name"),
                "required": bool(prop.get("is_required")),
                "multi_valued": bool(prop.get("is_multivalued")),
                "values": [v.get("name") for v in as_list(prop.get("possible_values")) if isinstance(v, Mapping)],
            })
        return {"category_id": category_id, "properties": properties}


    # ---------- transforms ----------
    @staticmethod
    def transform_product(raw: Mapping[str, Any]) -> PlatformProduct:
        skus = [s for s in as_list(raw.get("skus")) if s]
        return PlatformProduct(
            external_id=to_str(raw.get("listing_id")),
            title=raw.get("title") or "",
            description=raw.get("description") or "",
            sku=to_str(skus[0]) if skus else None,
            price=money(raw.get("price")),
            quantity=to_int(raw.get("quantity"), 0),
            weight=to_decimal(raw.get("item_weight"), q="0.001"),
            weight_unit=raw.get("item_weight_unit") or "lb",
            category_id=to_str(raw.get("taxonomy_id")),
            images=[img.get("url_fullxfull") or img.get("url_570xN")
                    for img in as_list(raw.get("images"))
                    if isinstance(img, Mapping) and (img.get("url_fullxfull") or img.get("url_570xN"))],
            attributes={"materials": as_list(raw.get("materials"))} if raw.get("materials") else {},
            condition="new",
            status="active" if raw.get("state", "active") == "active" else "inactive",
            metadata={
                "tags": as_list(raw.get("tags")),
                "url": raw.get("url"),
                "who_made": raw.get("who_made"),
                "when_made": raw.get("when_made"),
                "currency": pick(raw, "price.currency_code"),
                "state": raw.get("state"),
            },
        )

    @staticmethod
    def build_listing_payload(product: PlatformProduct, connection_settings: Mapping[str, Any]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "title": product.title,
            "description": product.description,
            "price": float(product.price) if product.price is not None else 0.0,
            "quantity": product.quantity,
            "who_made": product.metadata.get("who_made") or connection_settings.get("who_made", "i_did"),
            "when_made": product.metadata.get("when_made") or connection_settings.get("when_made", "made_to_order"),
            "taxonomy_id": to_int(product.category_id or connection_settings.get("taxonomy_id"), 1),
            "is_supply": bool(connection_settings.get("is_supply", False)),
        }
        tags = product.metadata.get("tags")
        if tags:
            payload["tags"] = list(tags)
        materials = product.attributes.get("materials")
        if materials:
            payload["materials"] = list(materials)
        for key in ("shipping_profile_id", "return_policy_id"):
            if connection_settings.get(key):
                payload[key] = to_int(connection_settings[key])
        return payload

    @staticmethod
    def transform_order(raw: Mapping[str, Any]) -> PlatformOrder:
        etsy_status = str(raw.get("status") or "").lower()
        line_items = []
        for t in as_list(raw.get("transactions")):
            t = as_dict(t)
            qty = to_int(t.get("quantity"), 1)
            price = to_money(money(t.get("price")))
            line_items.append({
                "external_id": to_str(t.get("transaction_id")),
                "product_id": to_str(t.get("listing_id")),
                "variant_id": to_str(t.get("product_id")),
                "sku": t.get("sku"),
                "title": t.get("title"),
                "quantity": qty,
                "price": price,
                "total": price * qty,
            })

        return PlatformOrder(
            external_id=to_str(raw.get("receipt_id")) or "",
            order_number=to_str(raw.get("receipt_id")),
            status=RECEIPT_STATUS_MAP.get(etsy_status, ORDER_STATUS_PENDING),
            fulfillment_status="fulfilled" if raw.get("is_shipped") else "unfulfilled",
            payment_status="paid" if raw.get("is_paid") else "pending",
            total=to_money(money(raw.get("grandtotal"))),
            subtotal=to_money(money(raw.get("subtotal"))),
            shipping_cost=to_money(money(raw.get("total_shipping_cost"))),
            tax=to_money(money(raw.get("total_tax_cost"))),
            discount=to_money(money(raw.get("discount_amt"))),
            currency=pick(raw, "grandtotal.currency_code", default="USD"),
            customer={
                "external_id": to_str(raw.get("buyer_user_id")),
                "name": raw.get("name"),
                "email": raw.get("buyer_email"),
            },
            shipping_address={
                "name": raw.get("name"),
                "address1": raw.get("first_line"),
                "address2": raw.get("second_line"),
                "city": raw.get("city"),
                "state": raw.get("state"),
                "postal_code": raw.get("zip"),
                "country": raw.get("country_iso"),
            } if raw.get("first_line") or raw.get("city") else {},
            line_items=line_items,
            ordered_at=parse_datetime(raw.get("create_timestamp") or raw.get("created_timestamp")),
            metadata={
                "platform_status": raw.get("status"),
                "message_from_buyer": raw.get("message_from_buyer"),
                "is_gift": raw.get("is_gift"),
            },
        )
