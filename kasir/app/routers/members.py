from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ..audit_log import write_audit_log
from ..db import get_conn
from ..deps import get_current_user, require_admin

router = APIRouter(prefix="/members", tags=["members"])

MEMBER_COLUMNS = """
    m.id, m.name, m.phone, m.email, m.points, m.total_spent, m.last_visit,
    m.created_at, m.updated_at,
    (SELECT COUNT(*) FROM transactions t WHERE t.member_id = m.id) AS transaction_count
"""


class MemberIn(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    # Manual balance correction; admin only. Checkout moves points otherwise.
    points: Optional[int] = None


def _clean_phone(v: Optional[str]) -> Optional[str]:
    return (v or "").strip() or None


def _clean_email(v: Optional[str]) -> Optional[str]:
    return (v or "").strip().lower() or None


def _contact_taken(cur, phone: Optional[str], email: Optional[str], exclude_id: Optional[str] = None) -> bool:
    conds = []
    params: list = []
    if phone:
        conds.append("phone = %s")
        params.append(phone)
    if email:
        conds.append("lower(email) = %s")
        params.append(email)
    if not conds:
        return False
    sql = "SELECT 1 FROM members WHERE (" + " OR ".join(conds) + ")"
    if exclude_id:
        sql += " AND id <> %s"
        params.append(exclude_id)
    cur.execute(sql + " LIMIT 1", params)
    return cur.fetchone() is not None


def _validate_member(data: MemberIn, user: dict) -> tuple[str, Optional[str], Optional[str]]:
    name = (data.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Name is required")
    if data.points is not None:
        if user["role"] != "ADMIN":
            raise HTTPException(status_code=403, detail="permission denied")
        if data.points < 0:
            raise HTTPException(status_code=400, detail="points must be >= 0")
    return name, _clean_phone(data.phone), _clean_email(data.email)


@router.get("")
def list_members(
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
    _user=Depends(get_current_user),
):
    if page < 1:
        raise HTTPException(status_code=400, detail="page must be >= 1")
    if limit <= 0 or limit > 200:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 200")

    where = " WHERE true"
    params: list = []
    qq = (search or "").strip()
    if qq:
        where += " AND (m.name ILIKE %s OR m.phone ILIKE %s OR m.email ILIKE %s)"
        params.extend([f"%{qq}%"] * 3)

    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"SELECT {MEMBER_COLUMNS} FROM members m" + where + " ORDER BY m.created_at DESC LIMIT %s OFFSET %s",
                params + [limit, (page - 1) * limit],
            )
            rows = cur.fetchall()
            cur.execute("SELECT COUNT(*) AS n FROM members m" + where, params)
            total = int((cur.fetchone() or {}).get("n") or 0)
    return {
        "members": rows,
        "pagination": {"page": page, "limit": limit, "total": total, "pages": -(-total // limit)},
    }


@router.get("/search")
def search_member(phone: Optional[str] = None, email: Optional[str] = None, _user=Depends(get_current_user)):
    """
    Exact lookup used by the cashier screen before attaching a member to a sale.
    """
    phone, email = _clean_phone(phone), _clean_email(email)
    if not phone and not email:
        raise HTTPException(status_code=400, detail="Phone or email is required")
    conds = []
    params: list = []
    if phone:
        conds.append("m.phone = %s")
        params.append(phone)
    if email:
        conds.append("lower(m.email) = %s")
        params.append(email)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"SELECT {MEMBER_COLUMNS} FROM members m WHERE " + " OR ".join(conds)
                + " ORDER BY m.created_at ASC LIMIT 1",
                params,
            )
            row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Member not found")
    return row


@router.get("/{member_id}")
def get_member(member_id: str, _user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {MEMBER_COLUMNS} FROM members m WHERE m.id = %s", (member_id,))
            member = cur.fetchone()
            if not member:
                raise HTTPException(status_code=404, detail="Member not found")
            cur.execute(
                """
                SELECT id, transaction_id, kind, points, description, created_at
                FROM point_history
                WHERE member_id = %s
                ORDER BY created_at DESC
                LIMIT 50
                """,
                (member_id,),
            )
            return {"member": member, "pointHistory": cur.fetchall()}


@router.post("", status_code=201)
def create_member(data: MemberIn, user=Depends(get_current_user)):
    name, phone, email = _validate_member(data, user)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                if _contact_taken(cur, phone, email):
                    raise HTTPException(status_code=400, detail="Member with this phone or email already exists")
                cur.execute(
                    """
                    INSERT INTO members (id, name, phone, email, points)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s)
                    RETURNING id, name, phone, email, points, total_spent, last_visit, created_at, updated_at
                    """,
                    (name, phone, email, data.points or 0),
                )
                row = cur.fetchone()
                write_audit_log(cur, user["user_id"], "member_create", "member", row["id"], data.model_dump())
                return row


@router.put("/{member_id}")
def update_member(member_id: str, data: MemberIn, user=Depends(get_current_user)):
    name, phone, email = _validate_member(data, user)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, points FROM members WHERE id = %s FOR UPDATE", (member_id,))
                existing = cur.fetchone()
                if not existing:
                    raise HTTPException(status_code=404, detail="Member not found")
                if _contact_taken(cur, phone, email, exclude_id=member_id):
                    raise HTTPException(status_code=400, detail="Member with this phone or email already exists")
                points = existing["points"] if data.points is None else data.points
                cur.execute(
                    """
                    UPDATE members
                    SET name = %s, phone = %s, email = %s, points = %s,
                        last_visit = now(), updated_at = now()
                    WHERE id = %s
                    RETURNING id, name, phone, email, points, total_spent, last_visit, created_at, updated_at
                    """,
                    (name, phone, email, points, member_id),
                )
                row = cur.fetchone()
                details = data.model_dump()
                if data.points is not None:
                    details["points_before"] = existing["points"]
                write_audit_log(cur, user["user_id"], "member_update", "member", member_id, details)
                return row


@router.delete("/{member_id}")
def delete_member(member_id: str, user=Depends(require_admin)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, name FROM members WHERE id = %s FOR UPDATE", (member_id,))
                existing = cur.fetchone()
                if not existing:
                    raise HTTPException(status_code=404, detail="Member not found")
                cur.execute("SELECT 1 FROM transactions WHERE member_id = %s LIMIT 1", (member_id,))
                if cur.fetchone():
                    raise HTTPException(status_code=400, detail="Cannot delete member that has transactions")
                cur.execute("DELETE FROM point_history WHERE member_id = %s", (member_id,))
                cur.execute("DELETE FROM members WHERE id = %s", (member_id,))
                write_audit_log(cur, user["user_id"], "member_delete", "member", member_id, {"name": existing["name"]})
                return {"ok": True}
