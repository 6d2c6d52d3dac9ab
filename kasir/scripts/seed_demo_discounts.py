#!/usr/bin/env python3
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import psycopg
from psycopg.rows import dict_row

from kasir.app.voucher_rules import normalize_voucher_code


SCHEMA_PATH = Path(__file__).resolve().parents[1] / "db" / "migrations" / "001_init.sql"

DEMO_VOUCHERS = [
    # code, name, type, value, min_purchase, max_discount, usage_limit, per_user_limit
    ("HEMAT10", "Hemat 10%", "PERCENTAGE", 10, 50000, 20000, 500, 1),
    ("POTONG15", "Potongan 15rb", "FIXED_AMOUNT", 15000, 100000, None, 200, None),
    ("ONGKIR5", "Gratis ongkir 5rb", "FREE_SHIPPING", 5000, None, None, None, None),
]


def _truthy(v: str) -> bool:
    return (v or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _seed_category(cur, name: str) -> str:
    cur.execute("SELECT id FROM categories WHERE name = %s", (name,))
    row = cur.fetchone()
    if row:
        return row["id"]
    cur.execute("INSERT INTO categories (id, name) VALUES (gen_random_uuid(), %s) RETURNING id", (name,))
    return cur.fetchone()["id"]


def _seed_product(cur, name: str, category_id: str, price: int, stock: int) -> str:
    cur.execute("SELECT id FROM products WHERE name = %s", (name,))
    row = cur.fetchone()
    if row:
        return row["id"]
    cur.execute(
        """
        INSERT INTO products (id, category_id, name, price, stock)
        VALUES (gen_random_uuid(), %s, %s, %s, %s)
        RETURNING id
        """,
        (category_id, name, price, stock),
    )
    return cur.fetchone()["id"]


def _seed_promotion(cur, name: str, ptype: str, value, *, product_ids=(), category_ids=(), **qty) -> bool:
    cur.execute("SELECT id FROM promotions WHERE name = %s", (name,))
    if cur.fetchone():
        return False
    now = datetime.now(timezone.utc)
    cur.execute(
        """
        INSERT INTO promotions
          (id, name, type, discount_value, discount_type, min_quantity, buy_quantity, get_quantity,
           start_date, end_date, is_active)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, true)
        RETURNING id
        """,
        (
            name,
            ptype,
            value,
            "PERCENTAGE" if value <= 100 else "FIXED",
            qty.get("min_quantity"),
            qty.get("buy_quantity"),
            qty.get("get_quantity"),
            now,
            now + timedelta(days=90),
        ),
    )
    pid = cur.fetchone()["id"]
    for product_id in product_ids:
        cur.execute(
            "INSERT INTO promotion_products (promotion_id, product_id) VALUES (%s, %s)",
            (pid, product_id),
        )
    for category_id in category_ids:
        cur.execute(
            "INSERT INTO promotion_categories (promotion_id, category_id) VALUES (%s, %s)",
            (pid, category_id),
        )
    return True


def main() -> int:
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        print("seed_demo_discounts: missing DATABASE_URL", file=sys.stderr)
        return 2

    created = {"vouchers": 0, "promotions": 0}
    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        if _truthy(os.getenv("SEED_APPLY_SCHEMA", "")):
            conn.execute(SCHEMA_PATH.read_text(encoding="utf-8"))

        with conn.transaction():
            with conn.cursor() as cur:
                drinks = _seed_category(cur, "Minuman")
                snacks = _seed_category(cur, "Makanan Ringan")
                tea = _seed_product(cur, "Teh Botol 350ml", drinks, 5000, 240)
                coffee = _seed_product(cur, "Kopi Susu 250ml", drinks, 10000, 120)
                _seed_product(cur, "Keripik Singkong 100g", snacks, 12000, 80)

                now = datetime.now(timezone.utc)
                for code, name, vtype, value, min_purchase, max_discount, usage_limit, per_user in DEMO_VOUCHERS:
                    code = normalize_voucher_code(code)
                    cur.execute("SELECT 1 FROM vouchers WHERE upper(code) = %s", (code,))
                    if cur.fetchone():
                        # Idempotent: never duplicate a code.
                        continue
                    cur.execute(
                        """
                        INSERT INTO vouchers
                          (id, code, name, type, value, min_purchase, max_discount,
                           usage_limit, per_user_limit, start_date, end_date, is_active)
                        VALUES
                          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, true)
                        """,
                        (
                            code, name, vtype, value, min_purchase, max_discount,
                            usage_limit, per_user, now, now + timedelta(days=30),
                        ),
                    )
                    created["vouchers"] += 1

                seeded = [
                    _seed_promotion(cur, "Beli 3 Gratis 1 Kopi", "BUY_X_GET_Y", 0,
                                    product_ids=[coffee], buy_quantity=3, get_quantity=1),
                    _seed_promotion(cur, "Grosir Minuman 15%", "BULK_DISCOUNT", 15,
                                    category_ids=[drinks], min_quantity=10),
                    _seed_promotion(cur, "Teh Botol Hemat 500", "PRODUCT_DISCOUNT", 500, product_ids=[tea]),
                    _seed_promotion(cur, "Snack 5%", "CATEGORY_DISCOUNT", 5, category_ids=[snacks]),
                ]
                created["promotions"] = sum(1 for s in seeded if s)

    print("SEED_DEMO_DISCOUNTS_DONE")
    print(f"vouchers created: {created['vouchers']}")
    print(f"promotions created: {created['promotions']}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
