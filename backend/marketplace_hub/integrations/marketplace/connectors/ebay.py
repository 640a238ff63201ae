"""
eBay REST (Sell Inventory / Fulfillment / Taxonomy) connector
  - base: api.ebay.com 或 api.sandbox.ebay.com；Bearer user token（2 小时），refresh_token 换新
  - 商品 = inventory item（按 SKU）；价格在 offer 上，所以每个 item 要再查一次 offer
  - 分页：offset/limit，游标就是下一页的 offset
  - 订单状态由 orderFulfillmentStatus + orderPaymentStatus + cancelStatus 推导
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote

from marketplace_hub.core.config import secret_value, settings
from marketplace_hub.utils.clock import now_utc

from ..dto import (
    ORDER_STATUS_CANCELLED, ORDER_STATUS_COMPLETED, ORDER_STATUS_PENDING, ORDER_STATUS_PROCESSING,
    ORDER_STATUS_REFUNDED, InventoryUpdate, Page, PlatformOrder, PlatformProduct,
)
from ..normalizers import as_dict, as_list, parse_datetime, pick, to_decimal, to_int, to_money, to_str
from ..platform import Platform
from .base import BasePlatformConnector

logger = logging.getLogger(__name__)


INVENTORY_PATH = "/sell/inventory/v1"
FULFILLMENT_PATH = "/sell/fulfillment/v1"
TAXONOMY_PATH = "/commerce/taxonomy/v1"
USER_TOKEN_TTL_SEC = 7200

CONDITION_TO_EBAY: Dict[str, str] = {
    "new": "NEW",
    "used": "USED_EXCELLENT",
    "refurbished": "SELLER_REFURBISHED",
    "for_parts": "FOR_PARTS_OR_NOT_WORKING",
}


def derive_order_status(raw: Mapping[str, Any]) -> str:
    if pick(raw, "cancelStatus.cancelState") == "CANCELED":
        return ORDER_STATUS_CANCELLED
    payment = raw.get("orderPaymentStatus")
    if payment == "FULLY_REFUNDED":
        return ORDER_STATUS_REFUNDED
    fulfillment = raw.get("orderFulfillmentStatus")
    if fulfillment == "FULFILLED":
        return ORDER_STATUS_COMPLETED
    if fulfillment == "IN_PROGRESS" or payment == "PAID":
        return ORDER_STATUS_PROCESSING
    return ORDER_STATUS_PENDING


def flatten_category_tree(node: Mapping[str, Any], parent_id: Optional[str] = None,
                          out: Optional[List[Dict[str, Any]]] = None) -> List[Dict[str, Any]]:
    """rootCategoryNode → 扁平列表（根节点本身不算类目）。"""
    out = [] if out is None else out
    for child in as_list(node.get("childCategoryTreeNodes")):
        child = as_dict(child)
        cat = as_dict(child.get("category"))
        cat_id = to_str(cat.get("categoryId"))
        out.append({
            "id": cat_id,
            "name": cat.get("categoryName"),
            "parent_id": parent_id,
            "leaf": bool(child.get("leafCategoryTreeNode")),
            "level": to_int(child.get("categoryTreeNodeLevel")),
        })
        flatten_category_tree(child, cat_id, out)
    return out


class EbayConnector(BasePlatformConnector):

    platform = Platform.EBAY
    max_page_size = 200
    supports_token_refresh = True


    # ---------- plumbing ----------
    def _base_url(self) -> str:
        self._require_connection()
        return settings.ebay_api_base

    def _marketplace_id(self) -> str:
        return self._require_connection().setting("marketplace_id") or settings.EBAY_MARKETPLACE_ID

    def _auth_headers(self) -> Dict[str, str]:
        token = self._require(self._require_connection().access_token, "access token")
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Content-Language": "en-US",
            "X-EBAY-C-MARKETPLACE-ID": self._marketplace_id(),
        }

    def _refresh_tokens(self) -> bool:
        conn = self._require_connection()
        client_id = conn.credential("client_id") or settings.EBAY_CLIENT_ID
        client_secret = conn.credential("client_secret") or secret_value(settings.EBAY_CLIENT_SECRET)
        if not (client_id and client_secret and conn.refresh_token):
            self._error("eBay: refresh_token / client credentials missing")
            return False
        result = self.request(
            "POST", "/identity/v1/oauth2/token",
            data={
                "grant_type": "refresh_token",
                "refresh_token": conn.refresh_token,
                "scope": settings.EBAY_OAUTH_SCOPES,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            auth=(client_id, client_secret),
            authenticate=False, allow_refresh=False, op="oauth.refresh",
        )
        return self._apply_token_response(result, default_ttl=USER_TOKEN_TTL_SEC)

    def _ping(self) -> bool:
        return self.request("GET", "/sell/account/v1/privilege", op="account.privilege").ok


    # ---------- products ----------
    def get_products(self, limit: int = 250, cursor: Optional[str] = None) -> Page[PlatformProduct]:
        size = self._page_size(limit)
        offset = to_int(cursor, 0) or 0
        result = self.request("GET", f"{INVENTORY_PATH}/inventory_item", params={"limit": size, "offset": offset},
                              op="inventory_items.list")
        if not result.ok:
            return Page.failed(result.error)
        raw_items = as_list(result.get("inventoryItems"))
        total = to_int(result.get("total"), 0)
        next_offset = offset + size
        return self._build_page(
            raw_items, lambda i: self.transform_product(i, self._offer_for(i.get("sku"))),
            str(next_offset) if raw_items and next_offset < total else None, kind="inventory item",
        )

    def get_product(self, external_id: str) -> Optional[PlatformProduct]:
        result = self.request("GET", f"{INVENTORY_PATH}/inventory_item/{quote(external_id, safe='')}",
                              op="inventory_items.get")
        if not result.ok or not result.data:
            return None
        return self.transform_product(result.data, self._offer_for(external_id))

    def _offer_for(self, sku: Optional[str]) -> Dict[str, Any]:
        """没有 offer（只建了 inventory item、还没上架）时返回空 dict。"""
        if not sku:
            return {}
        result = self.request("GET", f"{INVENTORY_PATH}/offer",
                              params={"sku": sku, "marketplace_id": self._marketplace_id()}, op="offers.by_sku")
        return as_dict(result.get("offers.0"))

    def create_product(self, product: PlatformProduct) -> Optional[str]:
        if not product.sku:
            self._error("eBay inventory items are keyed by SKU; product.sku is required")
            return None
        if not self._put_inventory_item(product.sku, product, op="inventory_items.create"):
            return None

        offer = self.request("POST", f"{INVENTORY_PATH}/offer", json=self.build_offer_payload(product, self._connection_offer_settings()),
                             op="offers.create")
        offer_id = offer.get("offerId")
        if offer_id is None:
            return None
        if product.is_active:
            published = self.request("POST", f"{INVENTORY_PATH}/offer/{offer_id}/publish", op="offers.publish")
            if not published.ok:
                # item + offer 已建好，发布失败（多半缺 policy）时保留草稿
                logger.warning("ebay.offer.publish_failed sku=%s offer_id=%s", product.sku, offer_id)
        return product.sku

    def update_product(self, external_id: str, product: PlatformProduct) -> bool:
        if not self._put_inventory_item(external_id, product, op="inventory_items.update"):
            return False
        offer = self._offer_for(external_id)
        if not offer.get("offerId") or product.price is None:
            return True
        body = {"requests": [{
            "offers": [{
                "offerId": offer["offerId"],
                "availableQuantity": product.quantity,
                "price": {"value": str(product.price), "currency": product.metadata.get("currency", "USD")},
            }],
        }]}
        result = self.request("POST", f"{INVENTORY_PATH}/bulk_update_price_quantity", json=body,
                              op="offers.price_quantity")
        return self._bulk_ok(result)

    def delete_product(self, external_id: str) -> bool:
        return self.request("DELETE", f"{INVENTORY_PATH}/inventory_item/{quote(external_id, safe='')}",
                            op="inventory_items.delete").ok

    def _put_inventory_item(self, sku: str, product: PlatformProduct, *, op: str) -> bool:
        return self.request("PUT", f"{INVENTORY_PATH}/inventory_item/{quote(sku, safe='')}",
                            json=self.build_inventory_item_payload(product), op=op).ok

    def _connection_offer_settings(self) -> Dict[str, Any]:
        conn = self._require_connection()
        return {
            "marketplace_id": self._marketplace_id(),
            "merchant_location_key": conn.setting("merchant_location_key"),
            "fulfillment_policy_id": conn.setting("fulfillment_policy_id"),
            "payment_policy_id": conn.setting("payment_policy_id"),
            "return_policy_id": conn.setting("return_policy_id"),
        }

    def _bulk_ok(self, result) -> bool:
        if not result.ok:
            return False
        failed = [r for r in as_list(result.get("responses"))
                  if isinstance(r, Mapping) and to_int(r.get("statusCode"), 200) >= 400]
        if failed:
            self._error(f"bulk update rejected: {failed[0].get('errors') or failed[0].get('statusCode')}")
            return False
        return True


    # ---------- orders ----------
    def _get_orders(self, since, limit: int, cursor: Optional[str]) -> Page[PlatformOrder]:
        offset = to_int(cursor, 0) or 0
        params: Dict[str, Any] = {"limit": limit, "offset": offset}
        if since is not None:
            since_s = since.isoformat() if isinstance(since, datetime) else str(since)
            params["filter"] = f"creationdate:[{since_s}..]"
        result = self.request("GET", f"{FULFILLMENT_PATH}/order", params=params, op="orders.list")
        if not result.ok:
            return Page.failed(result.error)
        raw_orders = as_list(result.get("orders"))
        next_offset = offset + limit
        total = to_int(result.get("total"), 0)
        next_cursor = str(next_offset) if raw_orders and next_offset < total else None
        return self._build_page(raw_orders, self.transform_order, next_cursor, kind="order")

    def get_order(self, external_id: str) -> Optional[PlatformOrder]:
        result = self.request("GET", f"{FULFILLMENT_PATH}/order/{external_id}", op="orders.get")
        return self.transform_order(result.data) if result.ok and result.data else None

    def fulfill_order(self, external_id: str, fulfillment_data: Mapping[str, Any]) -> bool:
        order = self.request("GET", f"{FULFILLMENT_PATH}/order/{external_id}", op="orders.get")
        line_items = [as_dict(i) for i in as_list(order.get("lineItems"))]
        if not line_items:
            if order.ok:
                self._error(f"order {external_id} has no line items")
            return False

        shipped_at = fulfillment_data.get("shipped_at") or now_utc()
        payload = {
            "lineItems": [{"lineItemId": i.get("lineItemId"), "quantity": to_int(i.get("quantity"), 1)}
                          for i in line_items],
            "shippedDate": shipped_at.isoformat() if isinstance(shipped_at, datetime) else str(shipped_at),
            "shippingCarrierCode": fulfillment_data.get("carrier"),
            "trackingNumber": fulfillment_data.get("tracking_number"),
        }
        return self.request("POST", f"{FULFILLMENT_PATH}/order/{external_id}/shipping_fulfillment",
                            json=payload, op="orders.shipping_fulfillment").ok


    # ---------- inventory ----------
    def _update_inventory(self, update: InventoryUpdate) -> bool:
        sku = update.sku or update.external_id
        if not sku:
            self._error("eBay inventory update needs a SKU")
            return False

        current = None
        if update.is_adjustment:
            item = self.request("GET", f"{INVENTORY_PATH}/inventory_item/{quote(sku, safe='')}",
                                op="inventory_items.get")
            current = to_int(item.get("availability.shipToLocationAvailability.quantity")) if item.ok else None
        target = self._target_quantity(update, current)
        if target is None:
            return False

        body = {"requests": [{"sku": sku, "shipToLocationAvailability": {"quantity": target}}]}
        result = self.request("POST", f"{INVENTORY_PATH}/bulk_update_price_quantity", json=body,
                              op="inventory.quantity")
        return self._bulk_ok(result)


    # ---------- catalog ----------
    def _category_tree_id(self) -> str:
        return self._require_connection().setting("category_tree_id") or settings.EBAY_CATEGORY_TREE_ID

    def get_categories(self) -> List[Dict[str, Any]]:
        result = self.request("GET", f"{TAXONOMY_PATH}/category_tree/{self._category_tree_id()}",
                              op="taxonomy.category_tree")
        root = as_dict(result.get("rootCategoryNode"))
        return flatten_category_tree(root) if root else []

    def get_category_attributes(self, category_id: str) -> Dict[str, Any]:
        result = self.request(
            "GET", f"{TAXONOMY_PATH}/category_tree/{self._category_tree_id()}/get_item_aspects_for_category",
            params={"category_id": category_id}, op="taxonomy.item_aspects",
        )
        aspects = []
        for a in as_list(result.get("aspects")):
            a = as_dict(a)
            constraint = as_dict(a.get("aspectConstraint"))
            aspects.append({
                "name": a.get("localizedAspectName"),
                "required": bool(constraint.get("aspectRequired")),
                "type": constraint.get("aspectDataType"),
                "cardinality": constraint.get("itemToAspectCardinality"),
                "mode": constraint.get("aspectMode"),
                "values": [v.get("localizedValue") for v in as_list(a.get("aspectValues")) if isinstance(v, Mapping)],
            })
        return {"category_id": category_id, "aspects": aspects}


    # ---------- transforms ----------
    @staticmethod
    def transform_product(raw: Mapping[str, Any], offer: Optional[Mapping[str, Any]] = None) -> PlatformProduct:
        offer = offer or {}
        product = as_dict(raw.get("product"))
        aspects = as_dict(product.get("aspects"))
        condition = str(raw.get("condition") or "NEW")
        listing_status = offer.get("status")
        return PlatformProduct(
            external_id=to_str(raw.get("sku")),
            title=product.get("title") or "",
            description=product.get("description") or "",
            sku=to_str(raw.get("sku")),
            barcode=to_str(pick(product, "upc.0", "ean.0", "isbn.0")),
            price=to_decimal(pick(offer, "pricingSummary.price.value")),
            quantity=to_int(pick(raw, "availability.shipToLocationAvailability.quantity"), 0),
            weight=to_decimal(pick(raw, "packageWeightAndSize.weight.value"), q="0.001"),
            weight_unit=str(pick(raw, "packageWeightAndSize.weight.unit", default="POUND")).lower()
                        .replace("pound", "lb").replace("kilogram", "kg"),
            brand=to_str(product.get("brand") or pick(aspects, "Brand.0")),
            category_id=to_str(offer.get("categoryId")),
            images=[str(u) for u in as_list(product.get("imageUrls")) if u],
            attributes=aspects,
            condition="new" if condition.startswith("NEW") else condition.lower(),
            # 没 offer 或 offer 未发布 = 只存在库存里，不在售
            status="active" if listing_status == "PUBLISHED" else "inactive",
            metadata={
                "offer_id": offer.get("offerId"),
                "listing_id": pick(offer, "listing.listingId"),
                "currency": pick(offer, "pricingSummary.price.currency"),
                "ebay_condition": raw.get("condition"),
            },
        )

    @staticmethod
    def build_inventory_item_payload(product: PlatformProduct) -> Dict[str, Any]:
        item_product: Dict[str, Any] = {
            "title": product.title,
            "description": product.description,
            "aspects": {k: v if isinstance(v, list) else [v] for k, v in product.attributes.items()},
            "imageUrls": list(product.images),
        }
        if product.brand:
            item_product["brand"] = product.brand
        if product.barcode:
            item_product["upc"] = [product.barcode]
        payload: Dict[str, Any] = {
            "product": item_product,
            "condition": CONDITION_TO_EBAY.get(product.condition, "NEW"),
            "availability": {"shipToLocationAvailability": {"quantity": product.quantity}},
        }
        if product.weight is not None:
            payload["packageWeightAndSize"] = {
                "weight": {"value": float(product.weight),
                           "unit": "KILOGRAM" if product.weight_unit == "kg" else "POUND"},
            }
        return payload

    @staticmethod
    def build_offer_payload(product: PlatformProduct, offer_settings: Mapping[str, Any]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "sku": product.sku,
            "marketplaceId": offer_settings.get("marketplace_id") or settings.EBAY_MARKETPLACE_ID,
            "format": "FIXED_PRICE",
            "availableQuantity": product.quantity,
            "categoryId": product.category_id,
            "listingDescription": product.description,
            "pricingSummary": {"price": {
                "value": str(product.price) if product.price is not None else None,
                "currency": product.metadata.get("currency", "USD"),
            }},
        }
        policies = {
            "fulfillmentPolicyId": offer_settings.get("fulfillment_policy_id"),
            "paymentPolicyId": offer_settings.get("payment_policy_id"),
            "returnPolicyId": offer_settings.get("return_policy_id"),
        }
        policies = {k: v for k, v in policies.items() if v}
        if policies:
            payload["listingPolicies"] = policies
        if offer_settings.get("merchant_location_key"):
            payload["merchantLocationKey"] = offer_settings["merchant_location_key"]
        return payload

    @staticmethod
    def transform_order(raw: Mapping[str, Any]) -> PlatformOrder:
        pricing = as_dict(raw.get("pricingSummary"))
        ship_to = as_dict(pick(raw, "fulfillmentStartInstructions.0.shippingStep.shipTo"))
        contact = as_dict(ship_to.get("contactAddress"))
        buyer = as_dict(raw.get("buyer"))
        registration = as_dict(buyer.get("buyerRegistrationAddress"))
        fulfillment = raw.get("orderFulfillmentStatus")

        line_items = [
            {
                "external_id": to_str(i.get("lineItemId")),
                "product_id": to_str(i.get("legacyItemId")),
                "variant_id": to_str(i.get("legacyVariationId")),
                "sku": i.get("sku"),
                "title": i.get("title"),
                "quantity": to_int(i.get("quantity"), 1),
                "price": to_money(pick(i, "lineItemCost.value")),
                "total": to_money(pick(i, "total.value", "lineItemCost.value")),
            }
            for i in as_list(raw.get("lineItems")) if isinstance(i, Mapping)
        ]

        address = {
            "name": ship_to.get("fullName"),
            "address1": contact.get("addressLine1"),
            "address2": contact.get("addressLine2"),
            "city": contact.get("city"),
            "state": contact.get("stateOrProvince"),
            "postal_code": contact.get("postalCode"),
            "country": contact.get("countryCode"),
            "phone": pick(ship_to, "primaryPhone.phoneNumber"),
        } if ship_to else {}

        return PlatformOrder(
            external_id=to_str(raw.get("orderId")) or "",
            order_number=to_str(raw.get("legacyOrderId") or raw.get("orderId")),
            status=derive_order_status(raw),
            fulfillment_status={"FULFILLED": "fulfilled", "IN_PROGRESS": "partial"}.get(fulfillment, "unfulfilled"),
            payment_status=str(raw.get("orderPaymentStatus") or "pending").lower(),
            total=to_money(pick(pricing, "total.value")),
            subtotal=to_money(pick(pricing, "priceSubtotal.value")),
            shipping_cost=to_money(pick(pricing, "deliveryCost.value")),
            tax=to_money(pick(pricing, "tax.value")),
            # priceDiscount 是负数
            discount=to_money(abs(to_decimal(pick(pricing, "priceDiscount.value")) or 0)),
            currency=pick(pricing, "total.currency", default="USD"),
            customer={
                "username": buyer.get("username"),
                "name": registration.get("fullName"),
                "email": registration.get("email") or ship_to.get("email"),
                "phone": pick(registration, "primaryPhone.phoneNumber"),
            },
            shipping_address=address,
            line_items=line_items,
            ordered_at=parse_datetime(raw.get("creationDate")),
            metadata={
                "legacy_order_id": raw.get("legacyOrderId"),
                "sales_record_reference": raw.get("salesRecordReference"),
                "platform_status": fulfillment,
            },
        )
