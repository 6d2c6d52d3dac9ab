from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator, StringConstraints


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


# Canonical codes mirror the CHECK constraints in `kasir/db/migrations/001_init.sql`.
VoucherType = Annotated[Literal["PERCENTAGE", "FIXED_AMOUNT", "FREE_SHIPPING"], BeforeValidator(_to_upper_str)]
PromotionType = Annotated[
    Literal["PRODUCT_DISCOUNT", "CATEGORY_DISCOUNT", "BULK_DISCOUNT", "BUY_X_GET_Y"],
    BeforeValidator(_to_upper_str),
]
DiscountType = Annotated[Literal["PERCENTAGE", "FIXED"], BeforeValidator(_to_upper_str)]


# Voucher codes are matched case-insensitively; store them upper-cased.
VoucherCode = Annotated[
    str,
    BeforeValidator(_to_upper_str),
    StringConstraints(min_length=1, max_length=64, pattern=r"^[A-Z0-9][A-Z0-9_-]*$"),
]


# Keep a tight, safe character set so payment methods are stable identifiers.
PaymentMethod = Annotated[
    str,
    BeforeValidator(_to_lower_str),
    StringConstraints(min_length=1, max_length=32, pattern=r"^[a-z0-9][a-z0-9_-]*$"),
]
