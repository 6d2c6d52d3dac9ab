from typing import Optional

import pytest
from pydantic import BaseModel, ValidationError

from kasir.app.validation import DiscountType, PaymentMethod, PromotionType, VoucherCode, VoucherType


class _M(BaseModel):
    code: VoucherCode
    voucher_type: VoucherType
    promotion_type: PromotionType
    discount_type: DiscountType
    method: Optional[PaymentMethod] = None


def test_validation_types_normalize_case():
    m = _M(
        code=" welcome10 ",
        voucher_type="fixed_amount",
        promotion_type="Buy_X_Get_Y",
        discount_type="fixed",
        method=" QRIS ",
    )
    assert m.code == "WELCOME10"
    assert m.voucher_type == "FIXED_AMOUNT"
    assert m.promotion_type == "BUY_X_GET_Y"
    assert m.discount_type == "FIXED"
    assert m.method == "qris"


def test_voucher_code_rejects_internal_spaces():
    # outer spaces are stripped, internal spaces fail the regex
    with pytest.raises(ValidationError):
        _M(code="NEW YEAR", voucher_type="PERCENTAGE", promotion_type="BULK_DISCOUNT", discount_type="PERCENTAGE")


def test_unknown_voucher_type_is_rejected():
    with pytest.raises(ValidationError):
        _M(code="X1", voucher_type="CASHBACK", promotion_type="BULK_DISCOUNT", discount_type="PERCENTAGE")


def test_payment_method_rejects_weird_chars():
    with pytest.raises(ValidationError):
        _M(code="X1", voucher_type="PERCENTAGE", promotion_type="BULK_DISCOUNT", discount_type="FIXED", method="cash;drop")
