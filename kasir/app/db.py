import os
from psycopg.rows import dict_row
from contextlib import contextmanager

# psycopg3 connection pooling lives in a separate package.
from psycopg_pool import ConnectionPool

DATABASE_URL = os.getenv("APP_DATABASE_URL") or os.getenv("DATABASE_URL") or "postgresql://localhost/kasir"

def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default

# Pool sizing defaults are conservative for local/dev. Override in prod via env:
# - DB_POOL_MIN_SIZE / DB_POOL_MAX_SIZE
_POOL_MIN = _env_int("DB_POOL_MIN_SIZE", 1)
_POOL_MAX = _env_int("DB_POOL_MAX_SIZE", 10)

# Opened on app startup so importing routers never touches the network.
_pool = ConnectionPool(
    conninfo=DATABASE_URL,
    min_size=_POOL_MIN,
    max_size=_POOL_MAX,
    kwargs={"row_factory": dict_row},
    open=False,
)

@contextmanager
def _pooled_conn(pool: ConnectionPool):
    # `with get_conn() as conn:`
    # - commit on success
    # - rollback on exception
    # - return connection to pool
    with pool.connection() as conn:
        with conn:
            yield conn


def get_conn():
    return _pooled_conn(_pool)


def open_pool() -> None:
    _pool.open()


def close_pool() -> None:
    _pool.close()
