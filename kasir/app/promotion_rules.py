from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from .money import HUNDRED, ZERO, as_utc, q2, to_decimal, utcnow, within_window


PROMOTION_TYPES = ("PRODUCT_DISCOUNT", "CATEGORY_DISCOUNT", "BULK_DISCOUNT", "BUY_X_GET_Y")
DISCOUNT_TYPES = ("PERCENTAGE", "FIXED")

# discount_value at or below this is read as a percentage, above it as a currency
# amount. discount_type is not consulted (legacy behaviour kept for existing promotions).
PERCENT_THRESHOLD = HUNDRED

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class CartItem:
    product_id: str
    category_id: Optional[str]
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class Promotion:
    id: str
    name: str
    type: str
    discount_value: Decimal
    discount_type: str = "PERCENTAGE"
    min_quantity: Optional[int] = None
    buy_quantity: Optional[int] = None
    get_quantity: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: bool = True
    product_ids: frozenset = frozenset()
    category_ids: frozenset = frozenset()
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict) -> "Promotion":
        return cls(
            id=str(row["id"]),
            name=row.get("name") or "",
            type=str(row["type"]),
            discount_value=to_decimal(row.get("discount_value")),
            discount_type=row.get("discount_type") or "PERCENTAGE",
            min_quantity=row.get("min_quantity"),
            buy_quantity=row.get("buy_quantity"),
            get_quantity=row.get("get_quantity"),
            start_date=row.get("start_date"),
            end_date=row.get("end_date"),
            is_active=bool(row.get("is_active")),
            product_ids=frozenset(str(x) for x in (row.get("product_ids") or [])),
            category_ids=frozenset(str(x) for x in (row.get("category_ids") or [])),
            created_at=row.get("created_at"),
        )

    def is_current(self, now: datetime) -> bool:
        return self.is_active and within_window(self.start_date, self.end_date, now)

    def targets(self, item: CartItem) -> bool:
        if item.product_id in self.product_ids:
            return True
        return item.category_id is not None and item.category_id in self.category_ids


@dataclass
class AppliedPromotion:
    promotion_id: str
    name: str
    type: str
    # Unrounded; the breakdown total is rounded once over the sum.
    discount_amount: Decimal
    affected_items: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "promotionId": self.promotion_id,
            "name": self.name,
            "type": self.type,
            "discountAmount": self.discount_amount,
            "affectedItems": list(self.affected_items),
        }


@dataclass
class PromotionBreakdown:
    total_discount: Decimal = ZERO
    applied_promotions: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "totalDiscount": self.total_discount,
            "appliedPromotions": [p.to_dict() for p in self.applied_promotions],
        }


def _percent_or_fixed(amount: Decimal, value: Decimal, fixed: Decimal) -> Decimal:
    if value <= PERCENT_THRESHOLD:
        return amount * value / HUNDRED
    return fixed


def _line_discount(promo: Promotion, items: list[CartItem]) -> Decimal:
    value = promo.discount_value
    total = ZERO
    for item in items:
        total += _percent_or_fixed(item.line_total, value, value * item.quantity)
    return total


def _bulk_discount(promo: Promotion, items: list[CartItem]) -> Decimal:
    if not promo.min_quantity:
        return ZERO
    qty = sum(item.quantity for item in items)
    if qty < promo.min_quantity:
        return ZERO
    amount = sum((item.line_total for item in items), ZERO)
    return _percent_or_fixed(amount, promo.discount_value, promo.discount_value)


def _buy_x_get_y_discount(promo: Promotion, items: list[CartItem]) -> Decimal:
    buy, get = promo.buy_quantity, promo.get_quantity
    if not buy or not get or buy <= 0 or get <= 0:
        return ZERO
    total = ZERO
    for item in items:
        free_sets = item.quantity // buy
        free_units = min(free_sets * get, item.quantity)
        total += item.unit_price * free_units
    return total


_CALCULATORS: dict[str, Callable[[Promotion, list[CartItem]], Decimal]] = {
    "PRODUCT_DISCOUNT": _line_discount,
    "CATEGORY_DISCOUNT": _line_discount,
    "BULK_DISCOUNT": _bulk_discount,
    "BUY_X_GET_Y": _buy_x_get_y_discount,
}


def eligible_items(promo: Promotion, items: list[CartItem]) -> list[CartItem]:
    return [item for item in items if promo.targets(item)]


def promotion_discount(promo: Promotion, items: list[CartItem]) -> Decimal:
    calc = _CALCULATORS.get(promo.type)
    if calc is None:
        return ZERO
    return calc(promo, items)


def calculate_promotions(
    promotions: list[Promotion],
    items: list[CartItem],
    now: Optional[datetime] = None,
) -> PromotionBreakdown:
    """
    Apply every currently active promotion to the cart.

    Promotions are independent and additive: each one computes its discount
    over its own eligible items and all matching promotions apply. Listing
    order is newest first; it never changes the total.
    """
    now = now or utcnow()
    active = [p for p in promotions if p.is_current(now)]
    active = sorted(active, key=lambda p: as_utc(p.created_at) if p.created_at else _EPOCH, reverse=True)

    out = PromotionBreakdown()
    raw_total = ZERO
    for promo in active:
        matched = eligible_items(promo, items)
        if not matched:
            continue
        discount = promotion_discount(promo, matched)
        if discount <= 0:
            continue
        out.applied_promotions.append(
            AppliedPromotion(
                promotion_id=promo.id,
                name=promo.name,
                type=promo.type,
                discount_amount=discount,
                affected_items=[{"productId": i.product_id, "quantity": i.quantity} for i in matched],
            )
        )
        raw_total += discount
    out.total_discount = q2(raw_total)
    return out
