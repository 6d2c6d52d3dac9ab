from datetime import date, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..checkout import check_member_points, commit_checkout, quote_checkout
from ..db import get_conn
from ..deps import get_current_user
from ..validation import PaymentMethod

router = APIRouter(prefix="/transactions", tags=["transactions"])


class CheckoutLineIn(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    product_id: str
    quantity: int = Field(gt=0)


class CheckoutIn(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    items: list[CheckoutLineIn]
    voucher_code: Optional[str] = None
    member_id: Optional[str] = None
    points_used: int = 0
    payment_method: PaymentMethod = "cash"
    customer_name: Optional[str] = None


def _lines(data: CheckoutIn) -> list[tuple[str, int]]:
    if not data.items:
        raise HTTPException(status_code=400, detail="items are required")
    return [(line.product_id, line.quantity) for line in data.items]


@router.get("")
def list_transactions(
    page: int = 1,
    limit: int = 10,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    payment_method: Optional[str] = None,
    _user=Depends(get_current_user),
):
    if page < 1:
        raise HTTPException(status_code=400, detail="page must be >= 1")
    if limit <= 0 or limit > 200:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 200")

    where = " WHERE true"
    params: list = []
    if start_date:
        where += " AND t.created_at >= %s"
        params.append(start_date)
    if end_date:
        # Inclusive calendar day.
        where += " AND t.created_at < %s"
        params.append(end_date + timedelta(days=1))
    method = (payment_method or "").strip().lower()
    if method and method != "all":
        where += " AND t.payment_method = %s"
        params.append(method)

    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT t.id, t.user_id, t.member_id, m.name AS member_name, t.customer_name,
                       t.payment_method, t.subtotal, t.tax, t.voucher_code, t.voucher_discount,
                       t.promotion_discount, t.points_used, t.points_discount, t.total,
                       t.points_earned, t.created_at
                FROM transactions t
                LEFT JOIN members m ON m.id = t.member_id
                """
                + where
                + " ORDER BY t.created_at DESC LIMIT %s OFFSET %s",
                params + [limit, (page - 1) * limit],
            )
            rows = cur.fetchall()
            cur.execute("SELECT COUNT(*) AS n FROM transactions t" + where, params)
            total = int((cur.fetchone() or {}).get("n") or 0)
    return {
        "transactions": rows,
        "pagination": {"page": page, "limit": limit, "total": total, "pages": -(-total // limit)},
    }


@router.get("/{transaction_id}")
def get_transaction(transaction_id: str, _user=Depends(get_current_user)):
    """
    Stored snapshot for audit and receipt reprint. Discount figures come from
    the transaction row, never from current voucher/promotion definitions.
    """
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT t.*, m.name AS member_name
                FROM transactions t
                LEFT JOIN members m ON m.id = t.member_id
                WHERE t.id = %s
                """,
                (transaction_id,),
            )
            txn = cur.fetchone()
            if not txn:
                raise HTTPException(status_code=404, detail="transaction not found")
            cur.execute(
                """
                SELECT ti.id, ti.product_id, p.name AS product_name, ti.category_id,
                       ti.quantity, ti.unit_price, ti.line_total
                FROM transaction_items ti
                LEFT JOIN products p ON p.id = ti.product_id
                WHERE ti.transaction_id = %s
                ORDER BY p.name
                """,
                (transaction_id,),
            )
            return {"transaction": txn, "items": cur.fetchall()}


@router.post("/quote")
def quote_transaction(data: CheckoutIn, _user=Depends(get_current_user)):
    lines = _lines(data)
    with get_conn() as conn:
        with conn.cursor() as cur:
            check_member_points(cur, data.member_id, data.points_used)
            quote = quote_checkout(
                cur,
                lines,
                voucher_code=data.voucher_code,
                member_id=data.member_id,
                points_used=data.points_used,
            )
            return quote.to_dict()


@router.post("", status_code=201)
def create_transaction(data: CheckoutIn, user=Depends(get_current_user)):
    lines = _lines(data)
    with get_conn() as conn:
        return commit_checkout(
            conn,
            lines,
            user_id=user["user_id"],
            voucher_code=data.voucher_code,
            member_id=data.member_id,
            points_used=data.points_used,
            payment_method=data.payment_method,
            customer_name=(data.customer_name or "").strip() or None,
        )
