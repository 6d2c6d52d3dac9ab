from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..audit_log import write_audit_log
from ..db import get_conn
from ..deps import get_current_user, require_admin
from ..discount_store import fetch_active_promotions
from ..money import utcnow
from ..promotion_rules import PROMOTION_TYPES, CartItem, calculate_promotions
from ..validation import DiscountType, PromotionType

router = APIRouter(prefix="/promotions", tags=["promotions"])

PROMOTION_SELECT = """
    SELECT p.id, p.name, p.description, p.type, p.discount_value, p.discount_type,
           p.min_quantity, p.buy_quantity, p.get_quantity,
           p.start_date, p.end_date, p.is_active, p.created_at, p.updated_at,
           COALESCE(pp.products, '[]'::jsonb) AS products,
           COALESCE(pc.categories, '[]'::jsonb) AS categories
    FROM promotions p
    LEFT JOIN LATERAL (
        SELECT jsonb_agg(jsonb_build_object('id', pr.id, 'name', pr.name) ORDER BY pr.name) AS products
        FROM promotion_products x
        JOIN products pr ON pr.id = x.product_id
        WHERE x.promotion_id = p.id
    ) pp ON true
    LEFT JOIN LATERAL (
        SELECT jsonb_agg(jsonb_build_object('id', c.id, 'name', c.name) ORDER BY c.name) AS categories
        FROM promotion_categories y
        JOIN categories c ON c.id = y.category_id
        WHERE y.promotion_id = p.id
    ) pc ON true
"""


class PromotionIn(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str
    description: Optional[str] = None
    type: PromotionType
    discount_value: Decimal
    discount_type: DiscountType = "PERCENTAGE"
    min_quantity: Optional[int] = None
    buy_quantity: Optional[int] = None
    get_quantity: Optional[int] = None
    start_date: datetime
    end_date: datetime
    is_active: bool = True
    product_ids: list[str] = []
    category_ids: list[str] = []


class CalculateItemIn(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    product_id: str
    quantity: int = Field(gt=0)
    price: Decimal = Field(ge=0)
    category_id: Optional[str] = None


class CalculateIn(BaseModel):
    items: list[CalculateItemIn]


def _validate_promotion(data: PromotionIn) -> None:
    if not (data.name or "").strip():
        raise HTTPException(status_code=400, detail="name is required")
    if data.discount_value < 0:
        raise HTTPException(status_code=400, detail="discountValue must be >= 0")
    if data.discount_type == "PERCENTAGE" and data.discount_value > 100:
        raise HTTPException(status_code=400, detail="Percentage value must be between 0 and 100")
    if data.type == "BULK_DISCOUNT" and not (data.min_quantity and data.min_quantity > 0):
        raise HTTPException(status_code=400, detail="Minimum quantity is required for bulk discount")
    if data.type == "BUY_X_GET_Y" and not (
        data.buy_quantity and data.buy_quantity > 0 and data.get_quantity and data.get_quantity > 0
    ):
        raise HTTPException(
            status_code=400,
            detail="Buy quantity and get quantity are required for Buy X Get Y promotion",
        )
    if data.end_date < data.start_date:
        raise HTTPException(status_code=400, detail="endDate must be on or after startDate")


def _replace_targets(cur, promotion_id: str, product_ids: list[str], category_ids: list[str]):
    # Target sets are replaced wholesale, never diffed.
    cur.execute("DELETE FROM promotion_products WHERE promotion_id = %s", (promotion_id,))
    cur.execute("DELETE FROM promotion_categories WHERE promotion_id = %s", (promotion_id,))
    for product_id in dict.fromkeys(p.strip() for p in product_ids if p and p.strip()):
        cur.execute(
            "INSERT INTO promotion_products (promotion_id, product_id) VALUES (%s, %s)",
            (promotion_id, product_id),
        )
    for category_id in dict.fromkeys(c.strip() for c in category_ids if c and c.strip()):
        cur.execute(
            "INSERT INTO promotion_categories (promotion_id, category_id) VALUES (%s, %s)",
            (promotion_id, category_id),
        )


def _fetch_promotion(cur, promotion_id: str):
    cur.execute(PROMOTION_SELECT + " WHERE p.id = %s", (promotion_id,))
    return cur.fetchone()


@router.get("")
def list_promotions(active: Optional[bool] = None, type: Optional[str] = None, _user=Depends(get_current_user)):
    promo_type = (type or "").strip().upper()
    if promo_type and promo_type not in PROMOTION_TYPES:
        raise HTTPException(status_code=400, detail="Invalid promotion type")
    sql = PROMOTION_SELECT + " WHERE true"
    params: list = []
    if active is not None:
        sql += " AND p.is_active = %s"
        params.append(active)
        if active:
            now = utcnow()
            sql += " AND p.start_date <= %s AND p.end_date >= %s"
            params.extend([now, now])
    if promo_type:
        sql += " AND p.type = %s"
        params.append(promo_type)
    sql += " ORDER BY p.created_at DESC"
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return {"promotions": cur.fetchall()}


@router.get("/{promotion_id}")
def get_promotion(promotion_id: str, _user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            row = _fetch_promotion(cur, promotion_id)
            if not row:
                raise HTTPException(status_code=404, detail="Promotion not found")
            return row


@router.post("", status_code=201)
def create_promotion(data: PromotionIn, user=Depends(require_admin)):
    _validate_promotion(data)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO promotions
                      (id, name, description, type, discount_value, discount_type,
                       min_quantity, buy_quantity, get_quantity, start_date, end_date, is_active)
                    VALUES
                      (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        data.name.strip(),
                        data.description,
                        data.type,
                        data.discount_value,
                        data.discount_type,
                        data.min_quantity,
                        data.buy_quantity,
                        data.get_quantity,
                        data.start_date,
                        data.end_date,
                        data.is_active,
                    ),
                )
                pid = cur.fetchone()["id"]
                _replace_targets(cur, pid, data.product_ids, data.category_ids)
                write_audit_log(cur, user["user_id"], "promotion_create", "promotion", pid, data.model_dump())
                return _fetch_promotion(cur, pid)


@router.put("/{promotion_id}")
def update_promotion(promotion_id: str, data: PromotionIn, user=Depends(require_admin)):
    _validate_promotion(data)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE promotions
                    SET name = %s, description = %s, type = %s, discount_value = %s, discount_type = %s,
                        min_quantity = %s, buy_quantity = %s, get_quantity = %s,
                        start_date = %s, end_date = %s, is_active = %s, updated_at = now()
                    WHERE id = %s
                    RETURNING id
                    """,
                    (
                        data.name.strip(),
                        data.description,
                        data.type,
                        data.discount_value,
                        data.discount_type,
                        data.min_quantity,
                        data.buy_quantity,
                        data.get_quantity,
                        data.start_date,
                        data.end_date,
                        data.is_active,
                        promotion_id,
                    ),
                )
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="Promotion not found")
                _replace_targets(cur, promotion_id, data.product_ids, data.category_ids)
                write_audit_log(cur, user["user_id"], "promotion_update", "promotion", promotion_id, data.model_dump())
                return _fetch_promotion(cur, promotion_id)


@router.delete("/{promotion_id}")
def delete_promotion(promotion_id: str, user=Depends(require_admin)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("DELETE FROM promotion_products WHERE promotion_id = %s", (promotion_id,))
                cur.execute("DELETE FROM promotion_categories WHERE promotion_id = %s", (promotion_id,))
                cur.execute("DELETE FROM promotions WHERE id = %s RETURNING id", (promotion_id,))
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="Promotion not found")
                write_audit_log(cur, user["user_id"], "promotion_delete", "promotion", promotion_id, {})
                return {"ok": True}


@router.post("/calculate")
def calculate(data: CalculateIn, _user=Depends(get_current_user)):
    """
    Preview the promotion discount for a cart as the cashier builds it.
    Uses the prices sent by the client; checkout recomputes from the catalog.
    """
    items = [
        CartItem(
            product_id=i.product_id,
            category_id=i.category_id,
            quantity=i.quantity,
            unit_price=i.price,
        )
        for i in data.items
    ]
    now = utcnow()
    with get_conn() as conn:
        with conn.cursor() as cur:
            promotions = fetch_active_promotions(cur, now)
    return calculate_promotions(promotions, items, now=now).to_dict()
