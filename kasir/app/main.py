from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import psycopg
from psycopg import errors as pg_errors
import time
import uuid
from datetime import datetime, timezone
from .routers.vouchers import router as vouchers_router
from .routers.promotions import router as promotions_router
from .routers.transactions import router as transactions_router
from .routers.members import router as members_router
from .config import settings
from .db import get_conn, open_pool, close_pool
from .errors import CheckoutError
from .logs import json_log

SERVICE_NAME = "kasir-backend"

app = FastAPI(title="Kasir POS API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _debug_error(content: dict, exc: Exception) -> dict:
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return content


# Map common DB constraint/cast errors to 4xx so clients get actionable responses
# instead of generic 500s.
@app.exception_handler(pg_errors.InvalidTextRepresentation)
def _invalid_text_representation(_req: Request, exc: Exception):
    # e.g. a malformed uuid in a path or body
    return JSONResponse(status_code=400, content=_debug_error({"detail": "invalid value"}, exc))


@app.exception_handler(pg_errors.ForeignKeyViolation)
def _foreign_key_violation(_req: Request, exc: Exception):
    return JSONResponse(status_code=400, content=_debug_error({"detail": "invalid reference"}, exc))


@app.exception_handler(pg_errors.UniqueViolation)
def _unique_violation(_req: Request, exc: Exception):
    return JSONResponse(status_code=409, content=_debug_error({"detail": "conflict"}, exc))


@app.exception_handler(pg_errors.CheckViolation)
def _check_violation(_req: Request, exc: Exception):
    return JSONResponse(status_code=400, content=_debug_error({"detail": "constraint violation"}, exc))


@app.exception_handler(pg_errors.TransactionRollback)
def _transaction_rollback(req: Request, exc: Exception):
    # Deadlock or serialization failure; the same request can be replayed.
    json_log(
        "warning",
        "db.transaction_rollback",
        request_id=_current_request_id(req),
        path=req.url.path,
        error=str(exc),
    )
    return JSONResponse(status_code=409, content=_debug_error({"detail": "conflict", "retryable": True}, exc))


@app.exception_handler(psycopg.OperationalError)
def _db_unavailable(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log("error", "db.unavailable", request_id=rid, path=req.url.path, error=str(exc))
    content = {"detail": "database unavailable", "request_id": rid}
    return JSONResponse(status_code=503, content=_debug_error(content, exc))


@app.exception_handler(CheckoutError)
def _checkout_error(req: Request, exc: CheckoutError):
    json_log(
        "warning",
        "checkout.rejected",
        request_id=_current_request_id(req),
        path=req.url.path,
        reason=exc.reason,
        status_code=exc.status_code,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: Exception):
    content = {"detail": "validation failed"}
    if settings.env in {"local", "dev"} and hasattr(exc, "errors"):
        content["errors"] = exc.errors()
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log(
        "error",
        "http.request.unhandled",
        request_id=rid,
        method=req.method,
        path=req.url.path,
        error=str(exc),
    )
    content = {"detail": "internal error", "request_id": rid}
    return JSONResponse(status_code=500, content=_debug_error(content, exc))


# Correlation id + basic structured request logging.
@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    path = request.url.path
    method = request.method
    client_ip = (request.client.host if request.client else None)

    try:
        response = await call_next(request)
    except Exception as exc:
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "error",
            "http.request.error",
            request_id=rid,
            method=method,
            path=path,
            client_ip=client_ip,
            duration_ms=dur_ms,
            error=str(exc),
        )
        raise

    response.headers["X-Request-Id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    if not path.startswith("/health"):
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "info",
            "http.request",
            request_id=rid,
            method=method,
            path=path,
            status_code=response.status_code,
            client_ip=client_ip,
            duration_ms=dur_ms,
        )
    return response

# The cashier/admin web app runs on a different origin.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(vouchers_router)
app.include_router(promotions_router)
app.include_router(transactions_router)
app.include_router(members_router)


@app.on_event("startup")
def _startup():
    open_pool()
    ok, err = _db_health()
    if ok:
        json_log("info", "startup.db_connected", env=settings.env, version=settings.api_version)
    else:
        json_log("warning", "startup.db_probe_failed", env=settings.env, error=err)


@app.on_event("shutdown")
def _shutdown():
    close_pool()


@app.get("/")
def root():
    return {"status": "ok", "service": SERVICE_NAME}


def _db_health():
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()
        return True, None
    except Exception as exc:
        return False, str(exc)


@app.get("/health")
def health(req: Request):
    request_id = _current_request_id(req)
    ok, err = _db_health()
    content = {
        "status": "ok" if ok else "degraded",
        "env": settings.env,
        "db": "ok" if ok else "down",
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "started_at": STARTED_AT_UTC.isoformat(),
        "request_id": request_id,
    }
    if not ok:
        if settings.env in {"local", "dev"}:
            content["error"] = err
        return JSONResponse(status_code=503, content=content)
    return content


@app.get("/health/live")
def health_live(req: Request):
    return {
        "status": "ok",
        "env": settings.env,
        "service": SERVICE_NAME,
        "request_id": _current_request_id(req),
    }


@app.get("/health/ready")
def health_ready(req: Request):
    request_id = _current_request_id(req)
    ok, err = _db_health()
    content = {
        "status": "ready" if ok else "degraded",
        "env": settings.env,
        "db": "ok" if ok else "down",
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "request_id": request_id,
    }
    if not ok:
        if settings.env in {"local", "dev"}:
            content["error"] = err
        return JSONResponse(status_code=503, content=content)
    return content


@app.get("/meta")
def meta():
    return {
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "env": settings.env,
        "tax_rate": str(settings.tax_rate),
        "uptime_seconds": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
        "started_at": STARTED_AT_UTC.isoformat(),
    }
