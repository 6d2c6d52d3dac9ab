from datetime import datetime, timezone
from decimal import Decimal

import pytest
from fastapi import HTTPException

from kasir.app.routers import members as members_router
from kasir.app.routers.members import MemberIn


USER = {"user_id": "kasir-1", "role": "CASHIER"}
ADMIN = {"user_id": "admin-1", "role": "ADMIN"}


def _member_row(**kw):
    row = {
        "id": "m-1",
        "name": "Budi",
        "phone": "08123",
        "email": "budi@example.com",
        "points": 12,
        "total_spent": Decimal("150000"),
        "last_visit": None,
        "created_at": datetime(2026, 3, 1, tzinfo=timezone.utc),
        "transaction_count": 0,
    }
    row.update(kw)
    return row


class _FakeCursor:
    def __init__(self, member=None, contact_taken=False, has_transactions=False, rows=None, total=0):
        self.member = member
        self.contact_taken = contact_taken
        self.has_transactions = has_transactions
        self._rows = list(rows or [])
        self.total = total
        self.executed = []
        self.rows = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        params = list(params or [])
        self.executed.append((text, params))
        if text.startswith("delete from"):
            self.rows = []
            return
        if text.startswith("select 1 from members"):
            self.rows = [{"?column?": 1}] if self.contact_taken else []
            return
        if text.startswith("select count(*) as n from members"):
            self.rows = [{"n": self.total}]
            return
        if "from members m where" in text and "order by m.created_at desc" in text:
            self.rows = list(self._rows)
            return
        if "from members m where" in text or "from members where id = %s" in text:
            self.rows = [dict(self.member)] if self.member else []
            return
        if "from point_history" in text and text.startswith("select"):
            self.rows = []
            return
        if text.startswith("select 1 from transactions where member_id"):
            self.rows = [{"?column?": 1}] if self.has_transactions else []
            return
        if text.startswith("insert into members"):
            name, phone, email, points = params
            self.rows = [_member_row(id="m-new", name=name, phone=phone, email=email, points=points)]
            return
        if text.startswith("update members"):
            name, phone, email, points, member_id = params
            self.rows = [_member_row(id=member_id, name=name, phone=phone, email=email, points=points)]
            return
        if "insert into audit_logs" in text:
            return
        raise AssertionError(f"unexpected SQL in test cursor: {text}")

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class _FakeConn:
    def __init__(self, cur):
        self.cur = cur

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return self.cur

    def transaction(self):
        return self


def _patch_db(monkeypatch, cur):
    monkeypatch.setattr(members_router, "get_conn", lambda: _FakeConn(cur))
    return cur


def test_search_requires_phone_or_email():
    with pytest.raises(HTTPException) as exc_info:
        members_router.search_member(phone="  ", email=None, _user=USER)
    assert exc_info.value.status_code == 400
    assert exc_info.value.detail == "Phone or email is required"


def test_search_unknown_member_is_404(monkeypatch):
    _patch_db(monkeypatch, _FakeCursor(member=None))
    with pytest.raises(HTTPException) as exc_info:
        members_router.search_member(phone="0899", email=None, _user=USER)
    assert exc_info.value.status_code == 404


def test_search_matches_email_case_insensitively(monkeypatch):
    cur = _patch_db(monkeypatch, _FakeCursor(member=_member_row()))
    row = members_router.search_member(phone=None, email=" Budi@Example.com ", _user=USER)
    assert row["id"] == "m-1"
    sql, params = cur.executed[0]
    assert "lower(m.email) = %s" in sql
    assert params == ["budi@example.com"]


def test_create_member_normalises_contact_and_audits(monkeypatch):
    cur = _patch_db(monkeypatch, _FakeCursor())
    row = members_router.create_member(
        MemberIn.model_validate({"name": "  Siti ", "phone": " 0812 ", "email": " Siti@Mail.COM "}),
        user=USER,
    )
    assert row["name"] == "Siti"
    assert row["phone"] == "0812"
    assert row["email"] == "siti@mail.com"
    assert row["points"] == 0
    assert cur.executed[0][1] == ["0812", "siti@mail.com"]
    assert any(sql.startswith("insert into audit_logs") for sql, _ in cur.executed)


def test_create_member_rejects_duplicate_contact(monkeypatch):
    cur = _patch_db(monkeypatch, _FakeCursor(contact_taken=True))
    with pytest.raises(HTTPException) as exc_info:
        members_router.create_member(MemberIn(name="Budi", phone="08123"), user=USER)
    assert exc_info.value.status_code == 400
    assert exc_info.value.detail == "Member with this phone or email already exists"
    assert not any(sql.startswith("insert into members") for sql, _ in cur.executed)


def test_create_member_requires_name():
    with pytest.raises(HTTPException) as exc_info:
        members_router.create_member(MemberIn(name="   "), user=USER)
    assert exc_info.value.detail == "Name is required"


def test_cashier_cannot_set_points():
    with pytest.raises(HTTPException) as exc_info:
        members_router.create_member(MemberIn(name="Budi", points=500), user=USER)
    assert exc_info.value.status_code == 403


def test_update_member_keeps_points_and_excludes_itself_from_duplicate_check(monkeypatch):
    cur = _patch_db(monkeypatch, _FakeCursor(member=_member_row(points=12)))
    row = members_router.update_member("m-1", MemberIn(name="Budi S", phone="08123"), user=USER)
    assert row["points"] == 12
    assert row["name"] == "Budi S"
    dup_sql, dup_params = cur.executed[1]
    assert "id <> %s" in dup_sql
    assert dup_params == ["08123", "m-1"]
    update_sql, _ = next(e for e in cur.executed if e[0].startswith("update members"))
    assert "last_visit = now()" in update_sql


def test_admin_can_correct_points(monkeypatch):
    _patch_db(monkeypatch, _FakeCursor(member=_member_row(points=12)))
    row = members_router.update_member("m-1", MemberIn(name="Budi", points=40), user=ADMIN)
    assert row["points"] == 40


def test_update_unknown_member_is_404(monkeypatch):
    _patch_db(monkeypatch, _FakeCursor(member=None))
    with pytest.raises(HTTPException) as exc_info:
        members_router.update_member("m-x", MemberIn(name="Budi"), user=USER)
    assert exc_info.value.status_code == 404


def test_list_members_searches_and_paginates(monkeypatch):
    rows = [_member_row(), _member_row(id="m-2", name="Budiman")]
    cur = _patch_db(monkeypatch, _FakeCursor(rows=rows, total=12))
    out = members_router.list_members(search=" budi ", page=2, limit=5, _user=USER)

    assert out["members"] == rows
    assert out["pagination"] == {"page": 2, "limit": 5, "total": 12, "pages": 3}
    list_sql, list_params = cur.executed[0]
    assert "m.name ilike %s" in list_sql
    assert list_params == ["%budi%"] * 3 + [5, 5]
    assert cur.executed[1][1] == ["%budi%"] * 3


def test_list_members_rejects_bad_paging():
    with pytest.raises(HTTPException):
        members_router.list_members(search=None, page=0, limit=10, _user=USER)


def test_get_member_includes_point_history(monkeypatch):
    _patch_db(monkeypatch, _FakeCursor(member=_member_row()))
    out = members_router.get_member("m-1", _user=USER)
    assert out["member"]["id"] == "m-1"
    assert out["pointHistory"] == []


def test_delete_member_with_transactions_is_refused(monkeypatch):
    cur = _patch_db(monkeypatch, _FakeCursor(member=_member_row(), has_transactions=True))
    with pytest.raises(HTTPException) as exc_info:
        members_router.delete_member("m-1", user=ADMIN)
    assert exc_info.value.status_code == 400
    assert exc_info.value.detail == "Cannot delete member that has transactions"
    assert not any(sql.startswith("delete from") for sql, _ in cur.executed)


def test_delete_member_without_transactions(monkeypatch):
    cur = _patch_db(monkeypatch, _FakeCursor(member=_member_row()))
    assert members_router.delete_member("m-1", user=ADMIN) == {"ok": True}
    assert any(sql.startswith("delete from members") for sql, _ in cur.executed)
