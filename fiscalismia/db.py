# fiscalismia/db.py
"""
Fiscalismia - Database Layer

Async PostgreSQL connection pooling via psycopg3 + psycopg_pool.
- Exponential backoff retry on pool initialization
- Structured logging of DSN host/port/dbname/user (never the password)
- Pool health state tracking for the database health check
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Sequence
from urllib.parse import urlparse

import psycopg
from loguru import logger
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from . import __version__
from .core.config import Settings, get_settings

# ---------------------------------------------------------------------------
# Pool Health State
# ---------------------------------------------------------------------------


@dataclass
class PoolHealthState:
    """Tracks database pool initialization state for health probes."""

    initialized: bool = False
    healthy: bool = False
    last_error: str | None = None
    init_attempts: int = 0
    init_duration_ms: float | None = None


_pool_health = PoolHealthState()
_db_pool: Optional[AsyncConnectionPool] = None

MAX_RETRY_ATTEMPTS = 5
READINESS_CHECK_TIMEOUT = 2.0


def get_pool_health() -> PoolHealthState:
    """Return the current pool health state."""
    return _pool_health


def _parse_dsn_for_logging(dsn: str) -> dict[str, str | None]:
    """Extract loggable DSN components (no password)."""
    try:
        parsed = urlparse(dsn)
        return {
            "host": parsed.hostname,
            "port": str(parsed.port) if parsed.port else "5432",
            "dbname": parsed.path.lstrip("/") if parsed.path else None,
            "user": parsed.username,
        }
    except ValueError as e:
        return {"error": str(e)}


async def _open_pool(dsn: str) -> AsyncConnectionPool:
    app_name = "fiscalismia_v" + __version__.replace(".", "_")
    pool = AsyncConnectionPool(
        dsn,
        min_size=1,
        max_size=10,
        kwargs={"application_name": app_name},
        open=False,
    )
    await pool.open(wait=True, timeout=10.0)
    try:
        async with pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT 1;")
                row = await cur.fetchone()
                if row is None or row[0] != 1:
                    raise RuntimeError("SELECT 1 did not return expected result")
    except Exception:
        await pool.close()
        raise
    return pool


async def init_db_pool(settings: Settings | None = None) -> None:
    """
    Initialize the async PostgreSQL connection pool.

    Called from the FastAPI lifespan. Never raises: on failure the app keeps
    running in degraded mode and the database health check returns 503.
    """
    global _db_pool

    if _db_pool is not None:
        return

    settings = settings or get_settings()
    dsn = settings.database_url
    if not dsn:
        logger.warning("DATABASE_URL is not set or malformed; skipping DB init")
        _pool_health.last_error = "DATABASE_URL not configured"
        return

    dsn_info = _parse_dsn_for_logging(dsn)
    logger.info(
        "Database connection parameters",
        host=dsn_info.get("host"),
        port=dsn_info.get("port"),
        dbname=dsn_info.get("dbname"),
        user=dsn_info.get("user"),
    )

    start_time = time.monotonic()
    try:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type((psycopg.OperationalError, OSError, RuntimeError)),
            stop=stop_after_attempt(MAX_RETRY_ATTEMPTS),
            wait=wait_exponential_jitter(initial=1, max=15),
        ):
            with attempt:
                _pool_health.init_attempts = attempt.retry_state.attempt_number
                logger.info(
                    f"DB pool init: attempt {_pool_health.init_attempts}/{MAX_RETRY_ATTEMPTS}"
                )
                _db_pool = await _open_pool(dsn)
    except RetryError as e:
        last_exc = e.last_attempt.exception()
        _pool_health.initialized = False
        _pool_health.healthy = False
        _pool_health.last_error = f"{type(last_exc).__name__}: {str(last_exc)[:200]}"
        logger.error(
            f"Failed to initialize database pool after {MAX_RETRY_ATTEMPTS} attempts: {last_exc}"
        )
        return

    _pool_health.initialized = True
    _pool_health.healthy = True
    _pool_health.last_error = None
    _pool_health.init_duration_ms = (time.monotonic() - start_time) * 1000
    logger.info(f"Database pool initialized ({_pool_health.init_duration_ms:.0f}ms)")


async def close_db_pool() -> None:
    """Close the connection pool and reset health state."""
    global _db_pool
    if _db_pool is not None:
        logger.info("Closing PostgreSQL connection pool")
        await _db_pool.close()
        _db_pool = None
        _pool_health.initialized = False
        _pool_health.healthy = False


async def get_pool() -> Optional[AsyncConnectionPool]:
    """Returns the async connection pool, initializing it on first use."""
    if _db_pool is None:
        await init_db_pool()
    return _db_pool


@asynccontextmanager
async def get_connection() -> AsyncIterator[psycopg.AsyncConnection]:
    """
    Acquire a pooled connection; it is returned to the pool on exit,
    whether the block succeeds or raises.

        async with get_connection() as conn:
            ...
    """
    pool = await get_pool()
    if pool is None:
        raise RuntimeError("Database connection pool is not initialized")

    async with pool.connection() as conn:
        yield conn


async def check_db_ready(timeout: float = READINESS_CHECK_TIMEOUT) -> tuple[bool, str]:
    """
    Execute SELECT 1 with a timeout to verify the pool is healthy.

    Returns:
        Tuple of (is_ready, status_message)
    """
    pool = _db_pool
    if pool is None:
        return False, _pool_health.last_error or "Pool not initialized"

    async def _ping() -> int:
        async with pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT 1;")
                row = await cur.fetchone()
                return row[0] if row else 0

    try:
        result = await asyncio.wait_for(_ping(), timeout=timeout)
    except asyncio.TimeoutError:
        _pool_health.healthy = False
        _pool_health.last_error = f"Query timeout ({timeout}s)"
        return False, f"timeout ({timeout}s)"
    except psycopg.Error as e:
        _pool_health.healthy = False
        _pool_health.last_error = f"{type(e).__name__}: {str(e)[:100]}"
        return False, f"error: {type(e).__name__}"

    _pool_health.healthy = result == 1
    return _pool_health.healthy, "ok" if _pool_health.healthy else f"unexpected_result: {result}"


async def fetch_one(
    query: str,
    params: Sequence[Any] | None = None,
) -> Optional[dict[str, Any]]:
    """Convenience helper returning a single row as a dict."""
    async with get_connection() as conn:
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(query, params)
            return await cur.fetchone()
