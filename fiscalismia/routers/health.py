"""
Fiscalismia - Health Check Router

Key endpoints:
- GET /                       - API information
- GET /api/fiscalismia/hc     - Server health: version, uptime, host and memory
- GET /api/fiscalismia/db_hc  - Database health: 503 if the database does not answer
- GET /api/fiscalismia/ip     - Client address as seen behind proxies
"""

import asyncio
import logging
import os
import platform
import socket
import time
from datetime import timedelta
from typing import Any

import psycopg
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..core.config import API_ADDRESS, get_settings
from ..core.middleware import get_client_ip
from ..db import fetch_one, get_pool_health

HEALTH_DB_TIMEOUT = 5.0

_PROCESS_START = time.monotonic()

logger = logging.getLogger(__name__)

root_router = APIRouter(tags=["Health"])
router = APIRouter(tags=["Health"])


class RootInfoResponse(BaseModel):
    info: str
    endpoint: str
    health: str
    whatismyip: str


class ServerHealthResponse(BaseModel):
    """Server health check response."""

    status: str
    version: str
    process_uptime_hours: float
    server_uptime_hours: float | None = None
    hostname: str
    platform: str
    machine: str
    kernel: str
    load_avg: list[float] | None = None
    free_mem: str | None = None
    total_mem: str | None = None


class IpResponse(BaseModel):
    ip: str


def _server_uptime_seconds() -> float | None:
    try:
        with open("/proc/uptime", encoding="utf-8") as f:
            return float(f.read().split()[0])
    except (OSError, ValueError, IndexError):
        return None


def _memory_gb() -> tuple[str | None, str | None]:
    try:
        page_size = os.sysconf("SC_PAGE_SIZE")
        total = page_size * os.sysconf("SC_PHYS_PAGES")
        free = page_size * os.sysconf("SC_AVPHYS_PAGES")
    except (AttributeError, ValueError, OSError):
        return None, None
    gb = 1024**3
    return f"{free / gb:.3f} GB", f"{total / gb:.3f} GB"


def _load_avg() -> list[float] | None:
    try:
        return [round(value, 2) for value in os.getloadavg()]
    except (AttributeError, OSError):
        return None


@root_router.get(
    "/",
    response_model=RootInfoResponse,
    summary="API information",
)
async def root_info() -> RootInfoResponse:
    return RootInfoResponse(
        info="This is a REST API.",
        endpoint=f"{API_ADDRESS}/",
        health=f"{API_ADDRESS}/hc",
        whatismyip=f"{API_ADDRESS}/ip",
    )


@router.get(
    "/hc",
    response_model=ServerHealthResponse,
    summary="Server health check",
    description="Returns OK with server information. No authentication required.",
)
async def health_check() -> ServerHealthResponse:
    settings = get_settings()
    server_uptime = _server_uptime_seconds()
    free_mem, total_mem = _memory_gb()
    uname = platform.uname()
    return ServerHealthResponse(
        status="OK",
        version=settings.BACKEND_VERSION,
        process_uptime_hours=round((time.monotonic() - _PROCESS_START) / 3600, 2),
        server_uptime_hours=round(server_uptime / 3600, 2) if server_uptime is not None else None,
        hostname=socket.gethostname(),
        platform=uname.system.lower(),
        machine=uname.machine,
        kernel=uname.release,
        load_avg=_load_avg(),
        free_mem=free_mem,
        total_mem=total_mem,
    )


@router.get(
    "/db_hc",
    summary="Database health check",
    description="Returns postgres version and uptime, or 503 if the database is unavailable.",
    responses={503: {"description": "Database unavailable"}},
)
async def database_health_check() -> JSONResponse:
    """
    Query the database for its version and uptime.

    Returns 503 Service Unavailable when the pool is not initialized, the
    query times out or the row is incomplete.
    """
    unavailable = JSONResponse(status_code=503, content={"status": "Service Unavailable"})
    try:
        row: dict[str, Any] | None = await asyncio.wait_for(
            fetch_one(
                """
                SELECT
                  'OK' AS status,
                  version() AS postgres_version,
                  current_timestamp - pg_postmaster_start_time() AS up_time
                """
            ),
            timeout=HEALTH_DB_TIMEOUT,
        )
    except asyncio.TimeoutError:
        logger.warning(f"Database health check timed out after {HEALTH_DB_TIMEOUT}s")
        return unavailable
    except (psycopg.Error, RuntimeError) as e:
        logger.warning(
            f"Database health check failed: {type(e).__name__}: {e}",
            extra={"pool_error": get_pool_health().last_error},
        )
        return unavailable

    if not row or not row.get("postgres_version") or row.get("up_time") is None:
        return unavailable

    up_time = row["up_time"]
    if isinstance(up_time, timedelta):
        up_time = str(up_time)
    return JSONResponse(
        status_code=200,
        content={
            "status": row["status"],
            "postgres_version": row["postgres_version"],
            "up_time": up_time,
        },
    )


@router.get(
    "/ip",
    response_model=IpResponse,
    summary="Client IP address",
    description="Shows the client address after proxy headers are applied.",
)
async def get_ip_address(request: Request) -> IpResponse:
    return IpResponse(ip=get_client_ip(request))
