"""
平台无关的标准化数据（所有 connector 的产出/输入）
  - from_dict(): 按候选字段顺序宽松构造，缺字段给零值，不抛异常
  - to_dict():   from_dict 的结构逆运算（round trip 不丢字段）
  - to_dict 保留 Decimal / datetime 原样；写 JSON 列前由 utils.serialization.to_jsonable 转换
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, TypeVar

from .normalizers import (
    as_dict, as_list, parse_datetime, pick, to_decimal, to_int, to_money, to_str,
)


# 标准化后的订单状态
ORDER_STATUS_PENDING = "pending"
ORDER_STATUS_PROCESSING = "processing"
ORDER_STATUS_COMPLETED = "completed"
ORDER_STATUS_CANCELLED = "cancelled"
ORDER_STATUS_REFUNDED = "refunded"

ADJUSTMENT_SET = "set"
ADJUSTMENT_ADJUST = "adjust"


T = TypeVar("T")


class Page(List[T]):
    """
    一页结果 + 取下一页用的不透明游标（None 表示没有下一页）；整页拉取失败时 error 有值。
    rejected: 这一页里转换失败的原始记录 [{index, external_id, error}]，不影响其它条。
    """

    def __init__(self, items: Iterable[T] = (), next_cursor: Optional[str] = None, error: Optional[str] = None,
                 rejected: Optional[List[Dict[str, Any]]] = None):
        super().__init__(items)
        self.next_cursor = next_cursor
        self.error = error
        self.rejected: List[Dict[str, Any]] = list(rejected or [])

    @classmethod
    def failed(cls, error: Optional[str]) -> "Page[T]":
        return cls((), None, error or "request failed")

    @property
    def ok(self) -> bool:
        return self.error is None


def _image_urls(val) -> List[str]:
    urls: List[str] = []
    for img in as_list(val):
        if isinstance(img, Mapping):
            src = pick(img, "src", "url", "url_fullxfull", "link")
            if src:
                urls.append(str(src))
        elif img:
            urls.append(str(img))
    return urls


@dataclass
class PlatformProduct:
    """
    zero-values: title/description "", 可选 id/sku/价格 None, quantity 0, weight_unit "lb",
    condition "new", status "active"。price 为 None 表示来源没给价格（同步时按坏记录处理）。
    """

    external_id: Optional[str] = None
    title: str = ""
    description: str = ""
    sku: Optional[str] = None
    barcode: Optional[str] = None
    price: Optional[Decimal] = None
    compare_at_price: Optional[Decimal] = None
    quantity: int = 0
    weight: Optional[Decimal] = None
    weight_unit: str = "lb"
    brand: Optional[str] = None
    category: Optional[str] = None
    category_id: Optional[str] = None
    images: List[str] = field(default_factory=list)
    attributes: Dict[str, Any] = field(default_factory=dict)
    variants: List[Dict[str, Any]] = field(default_factory=list)
    condition: str = "new"
    status: str = "active"
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "PlatformProduct":
        raw = raw or {}
        return cls(
            external_id=to_str(pick(raw, "external_id", "externalId", "id")),
            title=str(pick(raw, "title", "name", default="")),
            description=str(pick(raw, "description", "body_html", "body", default="")),
            sku=to_str(pick(raw, "sku", "SKU")),
            barcode=to_str(pick(raw, "barcode", "upc", "gtin", "ean")),
            price=to_decimal(pick(raw, "price", "amount")),
            compare_at_price=to_decimal(pick(raw, "compare_at_price", "compareAtPrice", "retail_price", "msrp")),
            quantity=to_int(pick(raw, "quantity", "inventory_quantity", "inventory_level", "qty"), 0),
            weight=to_decimal(pick(raw, "weight"), q="0.001"),
            weight_unit=str(pick(raw, "weight_unit", "weightUnit", default="lb")),
            brand=to_str(pick(raw, "brand", "vendor")),
            category=to_str(pick(raw, "category", "product_type")),
            category_id=to_str(pick(raw, "category_id", "categoryId")),
            images=_image_urls(pick(raw, "images", "image_urls")),
            attributes=as_dict(pick(raw, "attributes", "aspects")),
            variants=[as_dict(v) for v in as_list(pick(raw, "variants"))],
            condition=str(pick(raw, "condition", default="new")),
            status=str(pick(raw, "status", default="active")),
            metadata=as_dict(pick(raw, "metadata", "meta")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "external_id": self.external_id,
            "title": self.title,
            "description": self.description,
            "sku": self.sku,
            "barcode": self.barcode,
            "price": self.price,
            "compare_at_price": self.compare_at_price,
            "quantity": self.quantity,
            "weight": self.weight,
            "weight_unit": self.weight_unit,
            "brand": self.brand,
            "category": self.category,
            "category_id": self.category_id,
            "images": list(self.images),
            "attributes": dict(self.attributes),
            "variants": [dict(v) for v in self.variants],
            "condition": self.condition,
            "status": self.status,
            "metadata": dict(self.metadata),
        }


@dataclass
class PlatformOrder:
    external_id: str = ""
    order_number: Optional[str] = None
    status: str = ORDER_STATUS_PENDING
    fulfillment_status: str = "unfulfilled"
    payment_status: str = "pending"
    total: Decimal = Decimal("0.00")
    subtotal: Decimal = Decimal("0.00")
    shipping_cost: Decimal = Decimal("0.00")
    tax: Decimal = Decimal("0.00")
    discount: Decimal = Decimal("0.00")
    currency: str = "USD"
    customer: Dict[str, Any] = field(default_factory=dict)
    shipping_address: Dict[str, Any] = field(default_factory=dict)
    billing_address: Dict[str, Any] = field(default_factory=dict)
    line_items: List[Dict[str, Any]] = field(default_factory=list)
    ordered_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def expected_total(self) -> Decimal:
        return self.subtotal + self.tax + self.shipping_cost - self.discount

    def is_reconciled(self, tolerance: Decimal = Decimal("0.01")) -> bool:
        # 各平台独立四舍五入，不要求逐分相等
        return abs(self.total - self.expected_total) <= tolerance

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "PlatformOrder":
        raw = raw or {}
        return cls(
            external_id=str(pick(raw, "external_id", "externalId", "id", "order_id", default="")),
            order_number=to_str(pick(raw, "order_number", "orderNumber", "number")),
            status=str(pick(raw, "status", default=ORDER_STATUS_PENDING)),
            fulfillment_status=str(pick(raw, "fulfillment_status", "fulfillmentStatus", default="unfulfilled")),
            payment_status=str(pick(raw, "payment_status", "paymentStatus", "financial_status", default="pending")),
            total=to_money(pick(raw, "total", "total_price", "grand_total")),
            subtotal=to_money(pick(raw, "subtotal", "subtotal_price")),
            shipping_cost=to_money(pick(raw, "shipping_cost", "shipping", "total_shipping")),
            tax=to_money(pick(raw, "tax", "total_tax")),
            discount=to_money(pick(raw, "discount", "total_discounts")),
            currency=str(pick(raw, "currency", "currency_code", default="USD")),
            customer=as_dict(pick(raw, "customer")),
            shipping_address=as_dict(pick(raw, "shipping_address", "shippingAddress")),
            billing_address=as_dict(pick(raw, "billing_address", "billingAddress")),
            line_items=[as_dict(i) for i in as_list(pick(raw, "line_items", "lineItems", "items"))],
            ordered_at=parse_datetime(pick(raw, "ordered_at", "orderedAt", "created_at")),
            metadata=as_dict(pick(raw, "metadata")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "external_id": self.external_id,
            "order_number": self.order_number,
            "status": self.status,
            "fulfillment_status": self.fulfillment_status,
            "payment_status": self.payment_status,
            "total": self.total,
            "subtotal": self.subtotal,
            "shipping_cost": self.shipping_cost,
            "tax": self.tax,
            "discount": self.discount,
            "currency": self.currency,
            "customer": dict(self.customer),
            "shipping_address": dict(self.shipping_address),
            "billing_address": dict(self.billing_address),
            "line_items": [dict(i) for i in self.line_items],
            "ordered_at": self.ordered_at,
            "metadata": dict(self.metadata),
        }


@dataclass
class InventoryUpdate:
    """出站库存写入；set 覆盖可用量，adjust 加一个带符号的增量。"""

    sku: str = ""
    quantity: int = 0
    external_id: Optional[str] = None
    external_variant_id: Optional[str] = None
    location_id: Optional[str] = None
    adjustment_type: str = ADJUSTMENT_SET

    @property
    def is_adjustment(self) -> bool:
        return self.adjustment_type == ADJUSTMENT_ADJUST

    def apply(self, current: int) -> int:
        """写入后的可用量；不会低于 0。"""
        if self.is_adjustment:
            return max(0, int(current or 0) + self.quantity)
        return max(0, self.quantity)

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "InventoryUpdate":
        raw = raw or {}
        kind = str(pick(raw, "adjustment_type", "adjustmentType", "type", default=ADJUSTMENT_SET)).lower()
        return cls(
            sku=str(pick(raw, "sku", default="")),
            quantity=to_int(pick(raw, "quantity", "qty", "available"), 0),
            external_id=to_str(pick(raw, "external_id", "externalId", "product_id")),
            external_variant_id=to_str(pick(raw, "external_variant_id", "externalVariantId", "variant_id")),
            location_id=to_str(pick(raw, "location_id", "locationId")),
            adjustment_type=kind if kind in (ADJUSTMENT_SET, ADJUSTMENT_ADJUST) else ADJUSTMENT_SET,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sku": self.sku,
            "quantity": self.quantity,
            "external_id": self.external_id,
            "external_variant_id": self.external_variant_id,
            "location_id": self.location_id,
            "adjustment_type": self.adjustment_type,
        }


@dataclass
class RateLimitStatus:
    remaining: Optional[int] = 0          # None: 平台不公布剩余额度（Amazon 只给速率）
    limit: int = 0
    reset_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"remaining": self.remaining, "limit": self.limit, "reset_at": self.reset_at}
