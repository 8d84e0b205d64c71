"""
Fiscalismia - Admin Router

GET /api/fiscalismia/admin/raw_data_etl

Starts the raw data ETL and streams its progress as server-sent events. The
run executes in a background task, so a caller that disconnects does not
cancel an ingestion that is already underway.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AbstractAsyncContextManager
from typing import Callable

from fastapi import APIRouter, Depends, HTTPException, status
from starlette.responses import StreamingResponse

from ..core.config import Settings, get_settings
from ..core.security import AuthContext, get_current_user
from ..etl.pipeline import EtlRunGuard, RawDataEtlPipeline, etl_run_guard, open_raw_data_etl
from ..etl.progress import SSEProgressChannel

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])

PipelineOpener = Callable[[Settings], AbstractAsyncContextManager[RawDataEtlPipeline]]

# Strong references to running ETL tasks; the loop only keeps weak ones
_background_tasks: set[asyncio.Task] = set()


def get_pipeline_opener() -> PipelineOpener:
    return open_raw_data_etl


def get_run_guard() -> EtlRunGuard:
    return etl_run_guard


async def _run_raw_data_etl(
    opener: PipelineOpener,
    settings: Settings,
    channel: SSEProgressChannel,
    caller_authorization: str,
    guard: EtlRunGuard,
) -> None:
    try:
        async with opener(settings) as pipeline:
            await pipeline.run(channel, caller_authorization)
    except Exception as exc:
        # Failures inside run() are already reported; this covers pipeline setup
        logger.exception("Raw data ETL could not be started")
        channel.emit(f"Raw data ETL could not be started. {type(exc).__name__}: {exc}", "error")
    finally:
        channel.close()
        guard.release()


@router.get(
    "/raw_data_etl",
    summary="Run the raw data ETL",
    description=(
        "Invokes the serverless ETL, downloads its TSV files, converts them to SQL "
        "and refreshes the database in one transaction. Progress is streamed as "
        "text/event-stream."
    ),
    response_class=StreamingResponse,
    responses={409: {"description": "A raw data ETL run is already in progress"}},
)
async def raw_data_etl(
    auth: AuthContext = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
    opener: PipelineOpener = Depends(get_pipeline_opener),
    guard: EtlRunGuard = Depends(get_run_guard),
) -> StreamingResponse:
    logger.info(f"admin received GET to raw_data_etl (subject={auth.subject})")

    if not guard.try_acquire():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A raw data ETL run is already in progress",
        )

    channel = SSEProgressChannel()
    try:
        response = channel.open()
        task = asyncio.create_task(
            _run_raw_data_etl(opener, settings, channel, auth.authorization, guard)
        )
    except Exception:
        guard.release()
        raise
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return response
