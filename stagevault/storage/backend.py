"""Relational backend availability.

Resolves, once per process, whether a Postgres pool can be opened from the
configured connection parameters. ``None`` means "no relational backend" and
every store falls back to the filesystem.
"""

from __future__ import annotations

import threading
from typing import Optional

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from stagevault.config import Settings, get_settings
from stagevault.logging import get_logger

logger = get_logger(__name__)

BackendHandle = Optional[ConnectionPool]

_UNRESOLVED = object()
_handle: object = _UNRESOLVED
_handle_lock = threading.Lock()


def resolve_backend_handle(settings: Settings) -> BackendHandle:
    """Open a connection pool, or return ``None`` when unconfigured or unreachable.

    A partially specified configuration counts as absent. Connection failures
    are logged and never raised.
    """
    if not settings.relational_configured:
        logger.info(
            "relational_backend_not_configured",
            host_set=bool(settings.db_host),
            user_set=bool(settings.db_user),
            password_set=bool(settings.db_password),
            database_set=bool(settings.db_name),
        )
        return None

    pool: ConnectionPool | None = None
    try:
        pool = ConnectionPool(
            settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=max(settings.db_pool_max_size, settings.db_pool_min_size),
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": settings.db_connect_timeout,
            },
            open=False,
        )
        pool.open(wait=True, timeout=settings.db_connect_timeout)
    except (PoolTimeout, psycopg.Error, OSError) as exc:
        logger.warning(
            "relational_backend_unavailable",
            host=settings.db_host,
            database=settings.db_name,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        if pool is not None:
            pool.close()
        return None

    logger.info(
        "relational_backend_ready",
        host=settings.db_host,
        port=settings.db_port,
        database=settings.db_name,
    )
    return pool


def get_backend_handle(settings: Settings | None = None) -> BackendHandle:
    """Return the process-wide handle, resolving it on first use."""
    global _handle
    with _handle_lock:
        if _handle is _UNRESOLVED:
            _handle = resolve_backend_handle(settings or get_settings())
        return _handle  # type: ignore[return-value]


def close_backend_handle() -> None:
    """Close the pool (if any) and forget the resolution."""
    global _handle
    with _handle_lock:
        handle, _handle = _handle, _UNRESOLVED
    if isinstance(handle, ConnectionPool):
        handle.close()
        logger.info("relational_backend_closed")