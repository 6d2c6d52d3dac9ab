from datetime import datetime, timedelta, timezone
from decimal import Decimal

from kasir.app.money import q2
from kasir.app.promotion_rules import CartItem, Promotion, calculate_promotions


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def _promo(**kw):
    base = dict(
        id="p-1",
        name="Promo",
        type="PRODUCT_DISCOUNT",
        discount_value=Decimal("10"),
        start_date=NOW - timedelta(days=1),
        end_date=NOW + timedelta(days=1),
        is_active=True,
        product_ids=frozenset({"prod-a"}),
        created_at=NOW - timedelta(days=2),
    )
    base.update(kw)
    return Promotion(**base)


def _item(pid, qty, price, category_id=None):
    return CartItem(product_id=pid, category_id=category_id, quantity=qty, unit_price=Decimal(price))


def test_buy_x_get_y_grants_free_units_per_full_set():
    promo = _promo(type="BUY_X_GET_Y", buy_quantity=3, get_quantity=1)
    out = calculate_promotions([promo], [_item("prod-a", 7, "10000")], now=NOW)
    assert out.total_discount == Decimal("20000")
    assert out.applied_promotions[0].affected_items == [{"productId": "prod-a", "quantity": 7}]


def test_buy_x_get_y_free_units_never_exceed_quantity():
    promo = _promo(type="BUY_X_GET_Y", buy_quantity=1, get_quantity=5)
    out = calculate_promotions([promo], [_item("prod-a", 2, "1000")], now=NOW)
    assert out.total_discount == Decimal("2000")


def test_bulk_discount_uses_aggregate_quantity_and_amount():
    promo = _promo(
        type="BULK_DISCOUNT",
        min_quantity=10,
        discount_value=Decimal("15"),
        product_ids=frozenset({"prod-a", "prod-b"}),
    )
    items = [_item("prod-a", 6, "5000"), _item("prod-b", 5, "5000")]
    out = calculate_promotions([promo], items, now=NOW)
    assert out.total_discount == Decimal("8250")


def test_bulk_discount_below_minimum_is_not_applied():
    promo = _promo(type="BULK_DISCOUNT", min_quantity=10, product_ids=frozenset({"prod-a"}))
    out = calculate_promotions([promo], [_item("prod-a", 9, "5000")], now=NOW)
    assert out.total_discount == Decimal("0")
    assert out.applied_promotions == []


def test_discount_value_above_hundred_is_a_fixed_amount_per_unit():
    # discount_type says PERCENTAGE but the value decides
    promo = _promo(discount_value=Decimal("500"), discount_type="PERCENTAGE")
    out = calculate_promotions([promo], [_item("prod-a", 3, "10000")], now=NOW)
    assert out.total_discount == Decimal("1500")

    promo = _promo(discount_value=Decimal("100"), discount_type="FIXED")
    out = calculate_promotions([promo], [_item("prod-a", 3, "10000")], now=NOW)
    assert out.total_discount == Decimal("30000")


def test_bulk_fixed_amount_applies_once():
    promo = _promo(type="BULK_DISCOUNT", min_quantity=2, discount_value=Decimal("2500"))
    out = calculate_promotions([promo], [_item("prod-a", 4, "5000")], now=NOW)
    assert out.total_discount == Decimal("2500")


def test_item_is_eligible_by_product_or_category():
    promo = _promo(
        type="CATEGORY_DISCOUNT",
        product_ids=frozenset({"prod-a"}),
        category_ids=frozenset({"cat-drinks"}),
    )
    items = [
        _item("prod-a", 1, "10000", category_id="cat-snacks"),
        _item("prod-b", 1, "20000", category_id="cat-drinks"),
        _item("prod-c", 1, "40000", category_id="cat-snacks"),
    ]
    out = calculate_promotions([promo], items, now=NOW)
    assert out.total_discount == Decimal("3000")
    assert [i["productId"] for i in out.applied_promotions[0].affected_items] == ["prod-a", "prod-b"]


def test_inactive_and_out_of_window_promotions_are_ignored():
    promos = [
        _promo(id="off", is_active=False),
        _promo(id="future", start_date=NOW + timedelta(minutes=1)),
        _promo(id="past", end_date=NOW - timedelta(minutes=1)),
    ]
    out = calculate_promotions(promos, [_item("prod-a", 1, "10000")], now=NOW)
    assert out.applied_promotions == []
    assert out.total_discount == Decimal("0")


def test_matching_promotions_stack_and_list_newest_first():
    older = _promo(id="older", discount_value=Decimal("10"), created_at=NOW - timedelta(days=5))
    newer = _promo(id="newer", discount_value=Decimal("5"), created_at=NOW - timedelta(days=1))
    items = [_item("prod-a", 2, "10000")]

    out = calculate_promotions([older, newer], items, now=NOW)
    assert [p.promotion_id for p in out.applied_promotions] == ["newer", "older"]
    assert out.total_discount == Decimal("3000")

    # input order never changes the total
    assert calculate_promotions([newer, older], items, now=NOW).total_discount == Decimal("3000")


def test_total_is_rounded_once_over_raw_contributions():
    # each contribution is 0.005; rounding each first would give 0.03, rounding the sum gives 0.02
    promos = [
        _promo(id=f"p-{i}", discount_value=Decimal("0.5"), created_at=NOW - timedelta(hours=i))
        for i in range(3)
    ]
    out = calculate_promotions(promos, [_item("prod-a", 1, "1")], now=NOW)
    raw = [p.discount_amount for p in out.applied_promotions]
    assert raw == [Decimal("0.005")] * 3
    assert out.total_discount == q2(sum(raw))
    assert out.total_discount == Decimal("0.02")
    assert sum(q2(r) for r in raw) != out.total_discount


def test_to_dict_is_camel_case():
    out = calculate_promotions([_promo()], [_item("prod-a", 1, "10000")], now=NOW).to_dict()
    assert out["totalDiscount"] == Decimal("1000.00")
    applied = out["appliedPromotions"][0]
    assert applied["promotionId"] == "p-1"
    assert applied["type"] == "PRODUCT_DISCOUNT"
    assert applied["discountAmount"] == Decimal("1000")
