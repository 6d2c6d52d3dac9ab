from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from fastapi import HTTPException
from psycopg import errors as pg_errors

from .config import settings
from .discount_store import (
    add_point_history,
    apply_member_points,
    claim_voucher_use,
    count_member_redemptions,
    decrement_stock,
    fetch_active_promotions,
    fetch_member,
    fetch_products,
    fetch_voucher_by_code,
    insert_transaction,
    insert_transaction_items,
    record_voucher_usage,
)
from .errors import ConcurrencyConflict, RuleViolation
from .logs import json_log
from .money import ZERO, floor_units, q2, to_decimal, utcnow
from .promotion_rules import CartItem, PromotionBreakdown, calculate_promotions
from .voucher_rules import USAGE_LIMIT_EXCEEDED, VoucherEvaluation, evaluate_voucher, normalize_voucher_code


PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"
MEMBER_NOT_FOUND = "MEMBER_NOT_FOUND"
INSUFFICIENT_POINTS = "INSUFFICIENT_POINTS"
OUT_OF_STOCK = "OUT_OF_STOCK"
CONCURRENT_UPDATE = "CONCURRENT_UPDATE"


@dataclass
class CheckoutQuote:
    items: list
    subtotal: Decimal
    tax_rate: Decimal
    tax: Decimal
    promotions: PromotionBreakdown = field(default_factory=PromotionBreakdown)
    voucher: Optional[VoucherEvaluation] = None
    member_id: Optional[str] = None
    points_used: int = 0
    points_discount: Decimal = ZERO
    total: Decimal = ZERO
    points_earned: int = 0

    @property
    def voucher_discount(self) -> Decimal:
        return self.voucher.discount_amount if self.voucher else ZERO

    @property
    def promotion_discount(self) -> Decimal:
        return self.promotions.total_discount

    def discount_breakdown(self) -> dict:
        voucher = None
        if self.voucher and self.voucher.voucher:
            voucher = {**self.voucher.voucher.summary(), "discountAmount": self.voucher_discount}
        return {
            "voucher": voucher,
            "promotionDiscount": self.promotion_discount,
            "appliedPromotions": [p.to_dict() for p in self.promotions.applied_promotions],
            "pointsUsed": self.points_used,
            "pointsDiscount": self.points_discount,
        }

    def to_dict(self) -> dict:
        return {
            "items": [
                {
                    "productId": i.product_id,
                    "categoryId": i.category_id,
                    "quantity": i.quantity,
                    "unitPrice": i.unit_price,
                    "lineTotal": i.line_total,
                }
                for i in self.items
            ],
            "memberId": self.member_id,
            "subtotal": self.subtotal,
            "taxRate": self.tax_rate,
            "tax": self.tax,
            "voucherDiscount": self.voucher_discount,
            "promotionDiscount": self.promotion_discount,
            "pointsUsed": self.points_used,
            "pointsDiscount": self.points_discount,
            "total": self.total,
            "pointsEarned": self.points_earned,
            "discountBreakdown": self.discount_breakdown(),
        }


def merge_lines(lines: Iterable[tuple[str, int]]) -> list[tuple[str, int]]:
    # The same product scanned twice becomes one line; first-seen order is kept.
    merged: dict[str, int] = {}
    for product_id, qty in lines:
        pid = str(product_id or "").strip()
        if not pid:
            raise HTTPException(status_code=400, detail="productId is required")
        if qty is None or int(qty) <= 0:
            raise HTTPException(status_code=400, detail="quantity must be > 0")
        merged[pid] = merged.get(pid, 0) + int(qty)
    return list(merged.items())


def price_cart(cur, lines: Iterable[tuple[str, int]]) -> list[CartItem]:
    """
    Build cart items from the live catalog. Prices and categories sent by the
    client are ignored.
    """
    merged = merge_lines(lines)
    if not merged:
        raise HTTPException(status_code=400, detail="items are required")
    products = fetch_products(cur, [pid for pid, _ in merged])
    items: list[CartItem] = []
    for pid, qty in merged:
        p = products.get(pid)
        if not p or not p.get("is_active", True):
            raise RuleViolation(PRODUCT_NOT_FOUND, f"Product {pid} not found", 404)
        items.append(
            CartItem(
                product_id=pid,
                category_id=p.get("category_id"),
                quantity=qty,
                unit_price=to_decimal(p.get("price")),
            )
        )
    return items


def compute_total(
    subtotal: Decimal,
    tax: Decimal,
    *,
    voucher_discount: Decimal = ZERO,
    promotion_discount: Decimal = ZERO,
    points_discount: Decimal = ZERO,
) -> Decimal:
    total = subtotal + tax - points_discount - voucher_discount - promotion_discount
    return q2(max(total, ZERO))


def evaluate_voucher_code(
    cur,
    code: str,
    subtotal,
    *,
    member_id: Optional[str] = None,
    now: Optional[datetime] = None,
    lock: bool = False,
) -> VoucherEvaluation:
    voucher = fetch_voucher_by_code(cur, code, for_update=lock)
    used = 0
    if voucher is not None and member_id and voucher.per_user_limit is not None:
        used = count_member_redemptions(cur, voucher.id, member_id)
    return evaluate_voucher(voucher, subtotal, member_id=member_id, member_usage_count=used, now=now)


def check_member_points(cur, member_id: Optional[str], points_used: int) -> Optional[dict]:
    if points_used < 0:
        raise HTTPException(status_code=400, detail="pointsUsed must be >= 0")
    if not member_id:
        if points_used:
            raise HTTPException(status_code=400, detail="pointsUsed requires a member")
        return None
    member = fetch_member(cur, member_id)
    if not member:
        raise RuleViolation(MEMBER_NOT_FOUND, "Member not found", 404)
    balance = int(member.get("points") or 0)
    if points_used > balance:
        raise RuleViolation(
            INSUFFICIENT_POINTS,
            f"Insufficient points ({balance} available, {points_used} requested)",
        )
    return member


def quote_checkout(
    cur,
    lines: Iterable[tuple[str, int]],
    *,
    voucher_code: Optional[str] = None,
    member_id: Optional[str] = None,
    points_used: int = 0,
    now: Optional[datetime] = None,
    lock: bool = False,
) -> CheckoutQuote:
    """
    Price a cart server-side: catalog prices, voucher, promotions, points and
    tax. `lock=True` reads the voucher row FOR UPDATE; only checkout commit
    passes it.
    """
    now = now or utcnow()
    items = price_cart(cur, lines)
    subtotal = q2(sum((i.line_total for i in items), ZERO))
    tax_rate = settings.tax_rate
    tax = q2(subtotal * tax_rate)

    voucher = None
    if normalize_voucher_code(voucher_code):
        voucher = evaluate_voucher_code(cur, voucher_code, subtotal, member_id=member_id, now=now, lock=lock)
        voucher.raise_for_rejection()

    promotions = calculate_promotions(fetch_active_promotions(cur, now), items, now=now)

    quote = CheckoutQuote(
        items=items,
        subtotal=subtotal,
        tax_rate=tax_rate,
        tax=tax,
        promotions=promotions,
        voucher=voucher,
        member_id=member_id,
        points_used=points_used,
        points_discount=q2(to_decimal(points_used) * settings.point_value),
    )
    quote.total = compute_total(
        subtotal,
        tax,
        voucher_discount=quote.voucher_discount,
        promotion_discount=quote.promotion_discount,
        points_discount=quote.points_discount,
    )
    if member_id:
        quote.points_earned = floor_units(quote.total, settings.points_earn_unit)
    return quote


def _apply_member_points(cur, member_id: str, transaction_id: str, quote: CheckoutQuote):
    delta = quote.points_earned - quote.points_used
    if apply_member_points(cur, member_id, delta, quote.total) is None:
        raise ConcurrencyConflict(INSUFFICIENT_POINTS, "Member points changed during checkout")
    # Earned and used are separate history rows, never netted.
    if quote.points_earned:
        add_point_history(
            cur, member_id, transaction_id, "EARNED", quote.points_earned,
            f"Earned from transaction {transaction_id}",
        )
    if quote.points_used:
        add_point_history(
            cur, member_id, transaction_id, "USED", -quote.points_used,
            f"Redeemed on transaction {transaction_id}",
        )


def commit_checkout(
    conn,
    lines: Iterable[tuple[str, int]],
    *,
    user_id: str,
    voucher_code: Optional[str] = None,
    member_id: Optional[str] = None,
    points_used: int = 0,
    payment_method: str = "cash",
    customer_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Recompute and persist a sale in one database transaction.

    Stock, voucher usage and member points move only through conditional
    updates; if any of them fails the whole transaction rolls back and a
    ConcurrencyConflict is raised. Returns the stored snapshot.
    """
    now = now or utcnow()
    lines = list(lines)

    try:
        quote, voucher, transaction_id, row = _commit_in_transaction(
            conn,
            lines,
            user_id=user_id,
            voucher_code=voucher_code,
            member_id=member_id,
            points_used=points_used,
            payment_method=payment_method,
            customer_name=customer_name,
            now=now,
        )
    except pg_errors.TransactionRollback as exc:
        # Deadlock or serialization failure: the database already rolled back.
        raise ConcurrencyConflict(CONCURRENT_UPDATE, "Checkout conflicted with another sale, retry") from exc

    json_log(
        "info",
        "checkout.committed",
        transaction_id=transaction_id,
        total=quote.total,
        voucher_code=voucher.code if voucher else None,
        promotions=len(quote.promotions.applied_promotions),
        member_id=member_id,
    )
    out = quote.to_dict()
    out.update(
        {
            "id": transaction_id,
            "createdAt": (row or {}).get("created_at") or now,
            "userId": user_id,
            "paymentMethod": payment_method,
            "customerName": customer_name,
            "voucherCode": voucher.code if voucher else None,
        }
    )
    return out


def _commit_in_transaction(
    conn,
    lines: list[tuple[str, int]],
    *,
    user_id: str,
    voucher_code: Optional[str],
    member_id: Optional[str],
    points_used: int,
    payment_method: str,
    customer_name: Optional[str],
    now: datetime,
):
    with conn.transaction():
        with conn.cursor() as cur:
            # Runs before any lock or write.
            check_member_points(cur, member_id, points_used)

            quote = quote_checkout(
                cur,
                lines,
                voucher_code=voucher_code,
                member_id=member_id,
                points_used=points_used,
                now=now,
                lock=True,
            )

            # Lock product rows in one canonical order so concurrent carts cannot deadlock.
            for item in sorted(quote.items, key=lambda i: i.product_id):
                if decrement_stock(cur, item.product_id, item.quantity) is None:
                    raise ConcurrencyConflict(OUT_OF_STOCK, f"Insufficient stock for product {item.product_id}")

            voucher = quote.voucher.voucher if quote.voucher else None
            if voucher is not None and claim_voucher_use(cur, voucher.id) is None:
                raise ConcurrencyConflict(USAGE_LIMIT_EXCEEDED, "Voucher usage limit exceeded")

            transaction_id = str(uuid.uuid4())
            row = insert_transaction(
                cur,
                {
                    "id": transaction_id,
                    "user_id": user_id,
                    "member_id": member_id,
                    "customer_name": customer_name,
                    "payment_method": payment_method,
                    "subtotal": quote.subtotal,
                    "tax": quote.tax,
                    "points_used": quote.points_used,
                    "points_discount": quote.points_discount,
                    "voucher_id": voucher.id if voucher else None,
                    "voucher_code": voucher.code if voucher else None,
                    "voucher_discount": quote.voucher_discount,
                    "promotion_discount": quote.promotion_discount,
                    "total": quote.total,
                    "points_earned": quote.points_earned,
                    "discount_breakdown": quote.discount_breakdown(),
                },
            )
            insert_transaction_items(cur, transaction_id, quote.items)
            if voucher is not None:
                record_voucher_usage(cur, voucher.id, transaction_id, user_id, member_id, quote.voucher_discount)
            if member_id:
                _apply_member_points(cur, member_id, transaction_id, quote)

    return quote, voucher, transaction_id, row
