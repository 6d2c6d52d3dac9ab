from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from typing import Optional

from .promotion_rules import CartItem, Promotion
from .voucher_rules import Voucher, normalize_voucher_code


# Catalog

def fetch_products(cur, product_ids: list[str]) -> dict[str, dict]:
    ids = sorted({str(x) for x in (product_ids or []) if str(x).strip()})
    if not ids:
        return {}
    cur.execute(
        """
        SELECT id::text AS id, category_id::text AS category_id, name, price, stock, is_active
        FROM products
        WHERE id = ANY(%s::uuid[])
        """,
        (ids,),
    )
    return {str(r["id"]): r for r in (cur.fetchall() or [])}


def decrement_stock(cur, product_id: str, quantity: int) -> Optional[int]:
    # Conditional: never lets stock go negative. Returns the new stock or None.
    cur.execute(
        """
        UPDATE products
        SET stock = stock - %s, updated_at = now()
        WHERE id = %s AND stock >= %s
        RETURNING stock
        """,
        (quantity, product_id, quantity),
    )
    row = cur.fetchone()
    return None if not row else int(row["stock"])


# Vouchers

def fetch_voucher_by_code(cur, code: str, for_update: bool = False) -> Optional[Voucher]:
    sql = """
        SELECT id, code, name, type, value, min_purchase, max_discount,
               usage_limit, usage_count, per_user_limit, start_date, end_date, is_active
        FROM vouchers
        WHERE upper(code) = %s
        """
    if for_update:
        sql += "FOR UPDATE\n"
    cur.execute(sql, (normalize_voucher_code(code),))
    row = cur.fetchone()
    return Voucher.from_row(row) if row else None


def count_member_redemptions(cur, voucher_id: str, member_id: str) -> int:
    cur.execute(
        """
        SELECT COUNT(*) AS n
        FROM voucher_usages
        WHERE voucher_id = %s AND member_id = %s
        """,
        (voucher_id, member_id),
    )
    row = cur.fetchone()
    return int((row or {}).get("n") or 0)


def claim_voucher_use(cur, voucher_id: str) -> Optional[int]:
    """
    Take one usage slot. Returns the new usage_count, or None when the voucher
    is exhausted (or was deactivated) by a concurrent checkout.
    """
    cur.execute(
        """
        UPDATE vouchers
        SET usage_count = usage_count + 1, updated_at = now()
        WHERE id = %s
          AND is_active = true
          AND (usage_limit IS NULL OR usage_count < usage_limit)
        RETURNING usage_count
        """,
        (voucher_id,),
    )
    row = cur.fetchone()
    return None if not row else int(row["usage_count"])


def record_voucher_usage(
    cur,
    voucher_id: str,
    transaction_id: str,
    user_id: Optional[str],
    member_id: Optional[str],
    discount_amount: Decimal,
):
    cur.execute(
        """
        INSERT INTO voucher_usages (id, voucher_id, transaction_id, user_id, member_id, discount_amount)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
        """,
        (voucher_id, transaction_id, user_id, member_id, discount_amount),
    )


# Promotions

def fetch_active_promotions(cur, now: datetime) -> list[Promotion]:
    cur.execute(
        """
        SELECT p.id, p.name, p.type, p.discount_value, p.discount_type,
               p.min_quantity, p.buy_quantity, p.get_quantity,
               p.start_date, p.end_date, p.is_active, p.created_at,
               COALESCE(pp.product_ids, ARRAY[]::text[]) AS product_ids,
               COALESCE(pc.category_ids, ARRAY[]::text[]) AS category_ids
        FROM promotions p
        LEFT JOIN LATERAL (
            SELECT array_agg(x.product_id::text) AS product_ids
            FROM promotion_products x
            WHERE x.promotion_id = p.id
        ) pp ON true
        LEFT JOIN LATERAL (
            SELECT array_agg(y.category_id::text) AS category_ids
            FROM promotion_categories y
            WHERE y.promotion_id = p.id
        ) pc ON true
        WHERE p.is_active = true
          AND p.start_date <= %s
          AND p.end_date >= %s
        ORDER BY p.created_at DESC
        """,
        (now, now),
    )
    return [Promotion.from_row(r) for r in (cur.fetchall() or [])]


# Members / loyalty

def fetch_member(cur, member_id: str) -> Optional[dict]:
    cur.execute(
        """
        SELECT id::text AS id, name, points, total_spent
        FROM members
        WHERE id = %s
        """,
        (member_id,),
    )
    return cur.fetchone()


def apply_member_points(cur, member_id: str, delta: int, spent: Decimal) -> Optional[int]:
    # Conditional: the balance never drops below zero. Returns the new balance or None.
    cur.execute(
        """
        UPDATE members
        SET points = points + %s,
            total_spent = total_spent + %s,
            updated_at = now()
        WHERE id = %s AND points + %s >= 0
        RETURNING points
        """,
        (delta, spent, member_id, delta),
    )
    row = cur.fetchone()
    return None if not row else int(row["points"])


def add_point_history(cur, member_id: str, transaction_id: str, kind: str, points: int, description: str):
    cur.execute(
        """
        INSERT INTO point_history (id, member_id, transaction_id, kind, points, description)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
        """,
        (member_id, transaction_id, kind, points, description),
    )


# Transactions

def insert_transaction(cur, txn: dict) -> dict:
    cur.execute(
        """
        INSERT INTO transactions
          (id, user_id, member_id, customer_name, payment_method,
           subtotal, tax, points_used, points_discount,
           voucher_id, voucher_code, voucher_discount, promotion_discount,
           total, points_earned, discount_breakdown)
        VALUES
          (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb)
        RETURNING id, created_at
        """,
        (
            txn["id"],
            txn["user_id"],
            txn.get("member_id"),
            txn.get("customer_name"),
            txn["payment_method"],
            txn["subtotal"],
            txn["tax"],
            txn.get("points_used") or 0,
            txn.get("points_discount") or 0,
            txn.get("voucher_id"),
            txn.get("voucher_code"),
            txn.get("voucher_discount") or 0,
            txn.get("promotion_discount") or 0,
            txn["total"],
            txn.get("points_earned") or 0,
            json.dumps(txn.get("discount_breakdown") or {}, default=str),
        ),
    )
    return cur.fetchone()


def insert_transaction_items(cur, transaction_id: str, items: list[CartItem]):
    for item in items:
        cur.execute(
            """
            INSERT INTO transaction_items
              (id, transaction_id, product_id, category_id, quantity, unit_price, line_total)
            VALUES
              (gen_random_uuid(), %s, %s, %s, %s, %s, %s)
            """,
            (transaction_id, item.product_id, item.category_id, item.quantity, item.unit_price, item.line_total),
        )
