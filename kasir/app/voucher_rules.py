from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from .errors import RuleViolation
from .money import HUNDRED, ZERO, fmt_amount, q2, to_decimal, utcnow, within_window


VOUCHER_TYPES = ("PERCENTAGE", "FIXED_AMOUNT", "FREE_SHIPPING")

# Rejection reasons, in evaluation order.
NOT_FOUND = "NOT_FOUND"
INACTIVE = "INACTIVE"
EXPIRED_OR_NOT_STARTED = "EXPIRED_OR_NOT_STARTED"
BELOW_MIN_PURCHASE = "BELOW_MIN_PURCHASE"
USAGE_LIMIT_EXCEEDED = "USAGE_LIMIT_EXCEEDED"
PER_USER_LIMIT_EXCEEDED = "PER_USER_LIMIT_EXCEEDED"


def normalize_voucher_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def _opt_decimal(v) -> Optional[Decimal]:
    return None if v is None else to_decimal(v)


def _opt_int(v) -> Optional[int]:
    return None if v is None else int(v)


@dataclass(frozen=True)
class Voucher:
    id: str
    code: str
    type: str
    value: Decimal
    name: str = ""
    min_purchase: Optional[Decimal] = None
    max_discount: Optional[Decimal] = None
    usage_limit: Optional[int] = None
    usage_count: int = 0
    per_user_limit: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: bool = True

    @classmethod
    def from_row(cls, row: dict) -> "Voucher":
        return cls(
            id=str(row["id"]),
            code=str(row["code"]),
            type=str(row["type"]),
            value=to_decimal(row["value"]),
            name=row.get("name") or "",
            min_purchase=_opt_decimal(row.get("min_purchase")),
            max_discount=_opt_decimal(row.get("max_discount")),
            usage_limit=_opt_int(row.get("usage_limit")),
            usage_count=int(row.get("usage_count") or 0),
            per_user_limit=_opt_int(row.get("per_user_limit")),
            start_date=row.get("start_date"),
            end_date=row.get("end_date"),
            is_active=bool(row.get("is_active")),
        )

    def summary(self) -> dict:
        return {"id": self.id, "code": self.code, "name": self.name, "type": self.type, "value": self.value}


@dataclass(frozen=True)
class VoucherEvaluation:
    valid: bool
    discount_amount: Decimal = ZERO
    reason: Optional[str] = None
    message: Optional[str] = None
    voucher: Optional[Voucher] = None

    @property
    def status_code(self) -> int:
        return 404 if self.reason == NOT_FOUND else 400

    def to_response(self) -> dict:
        if not self.valid:
            return {"valid": False, "reason": self.reason, "error": self.message}
        return {
            "valid": True,
            "voucher": self.voucher.summary() if self.voucher else None,
            "discountAmount": self.discount_amount,
        }

    def raise_for_rejection(self) -> None:
        if not self.valid:
            raise RuleViolation(self.reason or NOT_FOUND, self.message or "voucher rejected", self.status_code)


def _reject(reason: str, message: str, voucher: Optional[Voucher] = None) -> VoucherEvaluation:
    return VoucherEvaluation(valid=False, reason=reason, message=message, voucher=voucher)


def voucher_discount(voucher: Voucher, subtotal: Decimal) -> Decimal:
    """
    Discount granted by `voucher` on a pre-discount `subtotal`, rounded half-up
    to 2 places. Never exceeds the subtotal.
    """
    subtotal = to_decimal(subtotal)
    value = to_decimal(voucher.value)
    if voucher.type == "PERCENTAGE":
        discount = subtotal * value / HUNDRED
        if voucher.max_discount is not None and discount > voucher.max_discount:
            discount = voucher.max_discount
    elif voucher.type == "FIXED_AMOUNT":
        discount = min(value, subtotal)
    elif voucher.type == "FREE_SHIPPING":
        # No shipping leg at a till: a flat amount, still capped by what is being paid.
        discount = min(value, subtotal)
    else:
        discount = ZERO
    return q2(max(discount, ZERO))


def evaluate_voucher(
    voucher: Optional[Voucher],
    subtotal,
    *,
    member_id: Optional[str] = None,
    member_usage_count: int = 0,
    now: Optional[datetime] = None,
) -> VoucherEvaluation:
    """
    Validate a voucher snapshot against a cart subtotal.

    Checks run in a fixed order and the first failure wins, so a given input
    always yields the same reason. Per-member limits only apply when a
    `member_id` is known; guest checkouts are exempt. Pure: usage counters are
    only touched by checkout at commit time.
    """
    if voucher is None:
        return _reject(NOT_FOUND, "Voucher not found")
    if not voucher.is_active:
        return _reject(INACTIVE, "Voucher is not active", voucher)
    if not within_window(voucher.start_date, voucher.end_date, now or utcnow()):
        return _reject(EXPIRED_OR_NOT_STARTED, "Voucher is expired or not yet valid", voucher)

    subtotal = to_decimal(subtotal)
    if voucher.min_purchase is not None and subtotal < voucher.min_purchase:
        return _reject(
            BELOW_MIN_PURCHASE,
            f"Minimum purchase of {fmt_amount(voucher.min_purchase)} required",
            voucher,
        )
    if voucher.usage_limit is not None and voucher.usage_count >= voucher.usage_limit:
        return _reject(USAGE_LIMIT_EXCEEDED, "Voucher usage limit exceeded", voucher)
    if member_id and voucher.per_user_limit is not None and member_usage_count >= voucher.per_user_limit:
        return _reject(
            PER_USER_LIMIT_EXCEEDED,
            f"Personal usage limit exceeded ({member_usage_count}/{voucher.per_user_limit})",
            voucher,
        )

    return VoucherEvaluation(valid=True, discount_amount=voucher_discount(voucher, subtotal), voucher=voucher)
