import json

from psycopg import errors as pg_errors
from starlette.requests import Request

from kasir.app import main
from kasir.app.checkout import OUT_OF_STOCK
from kasir.app.errors import ConcurrencyConflict, RuleViolation


def _request(path="/transactions"):
    return Request(
        {
            "type": "http",
            "method": "POST",
            "path": path,
            "headers": [(b"x-request-id", b"rid-1")],
            "query_string": b"",
        }
    )


def test_rule_violation_renders_reason_and_message():
    res = main._checkout_error(_request("/vouchers/validate"), RuleViolation("INACTIVE", "Voucher is not active"))
    assert res.status_code == 400
    assert json.loads(res.body) == {"valid": False, "reason": "INACTIVE", "error": "Voucher is not active"}


def test_concurrency_conflict_is_409_and_retryable():
    res = main._checkout_error(_request(), ConcurrencyConflict(OUT_OF_STOCK, "Insufficient stock for product p"))
    assert res.status_code == 409
    body = json.loads(res.body)
    assert body["reason"] == OUT_OF_STOCK
    assert body["retryable"] is True


def test_unhandled_exception_carries_request_id():
    res = main._unhandled_exception(_request(), RuntimeError("boom"))
    assert res.status_code == 500
    assert json.loads(res.body)["request_id"] == "rid-1"


def test_routes_are_mounted():
    paths = main.app.openapi()["paths"]
    for p in (
        "/vouchers/validate",
        "/vouchers/{voucher_id}",
        "/promotions/calculate",
        "/transactions",
        "/transactions/quote",
        "/transactions/{transaction_id}",
        "/members",
        "/members/search",
        "/members/{member_id}",
        "/health",
    ):
        assert p in paths
    assert set(paths["/members/{member_id}"]) == {"get", "put", "delete"}


def test_deadlock_is_409_and_retryable():
    res = main._transaction_rollback(_request(), pg_errors.DeadlockDetected("deadlock detected"))
    assert res.status_code == 409
    body = json.loads(res.body)
    assert body["detail"] == "conflict"
    assert body["retryable"] is True
