from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ..audit_log import write_audit_log
from ..checkout import evaluate_voucher_code
from ..db import get_conn
from ..deps import get_current_user, require_admin
from ..validation import VoucherCode, VoucherType
from ..voucher_rules import normalize_voucher_code

router = APIRouter(prefix="/vouchers", tags=["vouchers"])

VOUCHER_COLUMNS = """
    id, code, name, description, type, value, min_purchase, max_discount,
    usage_limit, usage_count, per_user_limit, start_date, end_date, is_active,
    created_at, updated_at
"""


class VoucherIn(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    code: VoucherCode
    name: str
    description: Optional[str] = None
    type: VoucherType
    value: Decimal
    min_purchase: Optional[Decimal] = None
    max_discount: Optional[Decimal] = None
    usage_limit: Optional[int] = None
    per_user_limit: Optional[int] = None
    start_date: datetime
    end_date: datetime
    is_active: Optional[bool] = None


class VoucherValidateIn(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    code: str
    subtotal: Decimal
    user_id: Optional[str] = None
    member_id: Optional[str] = None


def _validate_voucher(data: VoucherIn) -> None:
    if not (data.name or "").strip():
        raise HTTPException(status_code=400, detail="name is required")
    if data.value <= 0:
        raise HTTPException(status_code=400, detail="value must be > 0")
    if data.type == "PERCENTAGE" and data.value > 100:
        raise HTTPException(status_code=400, detail="Percentage value must be between 0 and 100")
    if data.min_purchase is not None and data.min_purchase < 0:
        raise HTTPException(status_code=400, detail="minPurchase must be >= 0")
    if data.max_discount is not None and data.max_discount <= 0:
        raise HTTPException(status_code=400, detail="maxDiscount must be > 0")
    if data.usage_limit is not None and data.usage_limit < 1:
        raise HTTPException(status_code=400, detail="usageLimit must be >= 1")
    if data.per_user_limit is not None and data.per_user_limit < 1:
        raise HTTPException(status_code=400, detail="perUserLimit must be >= 1")
    if data.end_date < data.start_date:
        raise HTTPException(status_code=400, detail="endDate must be on or after startDate")


def _code_taken(cur, code: str, exclude_id: Optional[str] = None) -> bool:
    if exclude_id:
        cur.execute("SELECT 1 FROM vouchers WHERE upper(code) = %s AND id <> %s", (code, exclude_id))
    else:
        cur.execute("SELECT 1 FROM vouchers WHERE upper(code) = %s", (code,))
    return cur.fetchone() is not None


@router.get("")
def list_vouchers(code: Optional[str] = None, active: Optional[bool] = None, _user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            sql = f"SELECT {VOUCHER_COLUMNS} FROM vouchers WHERE true"
            params: list = []
            qq = (code or "").strip()
            if qq:
                sql += " AND code ILIKE %s"
                params.append(f"%{qq}%")
            if active is not None:
                sql += " AND is_active = %s"
                params.append(active)
            sql += " ORDER BY created_at DESC"
            cur.execute(sql, params)
            return {"vouchers": cur.fetchall()}


@router.get("/{voucher_id}")
def get_voucher(voucher_id: str, _user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {VOUCHER_COLUMNS} FROM vouchers WHERE id = %s", (voucher_id,))
            voucher = cur.fetchone()
            if not voucher:
                raise HTTPException(status_code=404, detail="Voucher not found")
            cur.execute(
                """
                SELECT u.id, u.transaction_id, u.user_id, u.member_id, m.name AS member_name,
                       u.discount_amount, t.total AS transaction_total, u.created_at
                FROM voucher_usages u
                JOIN transactions t ON t.id = u.transaction_id
                LEFT JOIN members m ON m.id = u.member_id
                WHERE u.voucher_id = %s
                ORDER BY u.created_at DESC
                """,
                (voucher_id,),
            )
            return {"voucher": voucher, "usages": cur.fetchall()}


@router.post("", status_code=201)
def create_voucher(data: VoucherIn, user=Depends(require_admin)):
    _validate_voucher(data)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                if _code_taken(cur, data.code):
                    raise HTTPException(status_code=400, detail="Voucher code already exists")
                cur.execute(
                    f"""
                    INSERT INTO vouchers
                      (id, code, name, description, type, value, min_purchase, max_discount,
                       usage_limit, per_user_limit, start_date, end_date, is_active)
                    VALUES
                      (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {VOUCHER_COLUMNS}
                    """,
                    (
                        data.code,
                        data.name.strip(),
                        data.description,
                        data.type,
                        data.value,
                        data.min_purchase,
                        data.max_discount,
                        data.usage_limit,
                        data.per_user_limit,
                        data.start_date,
                        data.end_date,
                        True if data.is_active is None else data.is_active,
                    ),
                )
                row = cur.fetchone()
                write_audit_log(cur, user["user_id"], "voucher_create", "voucher", row["id"], data.model_dump())
                return row


@router.put("/{voucher_id}")
def update_voucher(voucher_id: str, data: VoucherIn, user=Depends(require_admin)):
    _validate_voucher(data)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, is_active FROM vouchers WHERE id = %s FOR UPDATE", (voucher_id,))
                existing = cur.fetchone()
                if not existing:
                    raise HTTPException(status_code=404, detail="Voucher not found")
                if _code_taken(cur, data.code, exclude_id=voucher_id):
                    raise HTTPException(status_code=400, detail="Voucher code already exists")
                is_active = existing["is_active"] if data.is_active is None else data.is_active
                cur.execute(
                    f"""
                    UPDATE vouchers
                    SET code = %s, name = %s, description = %s, type = %s, value = %s,
                        min_purchase = %s, max_discount = %s, usage_limit = %s, per_user_limit = %s,
                        start_date = %s, end_date = %s, is_active = %s, updated_at = now()
                    WHERE id = %s
                    RETURNING {VOUCHER_COLUMNS}
                    """,
                    (
                        data.code,
                        data.name.strip(),
                        data.description,
                        data.type,
                        data.value,
                        data.min_purchase,
                        data.max_discount,
                        data.usage_limit,
                        data.per_user_limit,
                        data.start_date,
                        data.end_date,
                        is_active,
                        voucher_id,
                    ),
                )
                row = cur.fetchone()
                write_audit_log(cur, user["user_id"], "voucher_update", "voucher", voucher_id, data.model_dump())
                return row


@router.delete("/{voucher_id}")
def delete_voucher(voucher_id: str, user=Depends(require_admin)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, code FROM vouchers WHERE id = %s FOR UPDATE", (voucher_id,))
                existing = cur.fetchone()
                if not existing:
                    raise HTTPException(status_code=404, detail="Voucher not found")
                cur.execute("SELECT 1 FROM voucher_usages WHERE voucher_id = %s LIMIT 1", (voucher_id,))
                if cur.fetchone():
                    raise HTTPException(status_code=400, detail="Cannot delete voucher that has been used in transactions")
                cur.execute("DELETE FROM vouchers WHERE id = %s", (voucher_id,))
                write_audit_log(cur, user["user_id"], "voucher_delete", "voucher", voucher_id, {"code": existing["code"]})
                return {"ok": True}


@router.post("/validate")
def validate_voucher(data: VoucherValidateIn, _user=Depends(get_current_user)):
    """
    Check a code against a subtotal without redeeming it. Safe to call
    repeatedly: usage counters only move when a transaction commits.
    """
    code = normalize_voucher_code(data.code)
    if not code:
        raise HTTPException(status_code=400, detail="Voucher code and subtotal are required")
    if data.subtotal < 0:
        raise HTTPException(status_code=400, detail="subtotal must be >= 0")
    with get_conn() as conn:
        with conn.cursor() as cur:
            evaluation = evaluate_voucher_code(cur, code, data.subtotal, member_id=data.member_id)
    if not evaluation.valid:
        return JSONResponse(status_code=evaluation.status_code, content=evaluation.to_response())
    return evaluation.to_response()
