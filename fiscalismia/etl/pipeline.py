"""
Fiscalismia - Raw Data ETL Pipeline

Drives one ETL run end to end and reports every step on a ProgressSink:

    trigger (API Gateway) -> per presigned URL: fetch (S3) -> transform (/texttsv)
        -> ingest (one transaction)

Usage:
    async with open_raw_data_etl(settings) as pipeline:
        summary = await pipeline.run(channel, caller_authorization)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import httpx

from ..core.config import Settings, get_settings
from ..core.logging import LogContext, get_logger, new_run_id
from .datasets import DatasetName
from .errors import EtlError
from .fetcher import ArtifactFetcher
from .ingestion import IngestionEngine
from .progress import ProgressLevel, ProgressSink
from .transform_proxy import LocalTransformProxy
from .trigger import RemoteTriggerClient

logger = get_logger(__name__)


class EtlRunGuard:
    """
    Allows one ETL run per process at a time.

    The event loop is single threaded, so the check-and-set in try_acquire
    cannot interleave with another request.
    """

    def __init__(self) -> None:
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def try_acquire(self) -> bool:
        if self._active:
            return False
        self._active = True
        return True

    def release(self) -> None:
        self._active = False


etl_run_guard = EtlRunGuard()


class RawDataEtlPipeline:
    def __init__(
        self,
        trigger: RemoteTriggerClient,
        fetcher: ArtifactFetcher,
        proxy: LocalTransformProxy,
        engine: IngestionEngine,
    ):
        self.trigger = trigger
        self.fetcher = fetcher
        self.proxy = proxy
        self.engine = engine

    async def run(
        self,
        progress: ProgressSink,
        caller_authorization: str | None,
    ) -> Optional[dict[str, Any]]:
        """
        Execute the ETL and close `progress`.

        Never raises: every failure ends as one error event followed by
        close(). Returns the ingestion summary, or None on failure.
        """
        run_id = new_run_id()
        with LogContext(run_id=run_id):
            logger.info("Raw data ETL run started")
            try:
                summary = await self._execute(progress, caller_authorization)
            except EtlError as exc:
                logger.error(f"Raw data ETL failed: {exc.message}", extra={"error_code": exc.error_code})
                progress.emit(exc.message, ProgressLevel.ERROR)
                progress.close()
                return None
            except Exception as exc:
                logger.exception("Raw data ETL failed with an unexpected error")
                progress.emit(
                    f"Raw data ETL failed unexpectedly. {type(exc).__name__}: {exc}",
                    ProgressLevel.ERROR,
                )
                progress.close()
                return None

            progress.emit("ETL process completed. Database refreshed.", ProgressLevel.SUCCESS)
            progress.close(summary)
            logger.info("Raw data ETL run committed", extra={"summary": summary})
            return summary

    async def _execute(
        self,
        progress: ProgressSink,
        caller_authorization: str | None,
    ) -> dict[str, Any]:
        progress.emit("Starting raw data ETL. Invoking API Gateway...")
        locations = await self.trigger.trigger()
        progress.emit(
            f"API Gateway invoked successfully. Downloading {len(locations)} TSV files from S3...",
            ProgressLevel.SUCCESS,
        )

        batches: dict[DatasetName, str] = {}
        for location in locations:
            artifact = await self.fetcher.fetch(location, progress)
            with LogContext(dataset=artifact.dataset.value):
                await self.proxy.transform(artifact, caller_authorization, batches, progress)

        progress.emit("SQL statements generated. Inserting into database...")
        return await self.engine.ingest(batches, progress)


def build_pipeline(
    client: httpx.AsyncClient,
    settings: Settings,
    engine: IngestionEngine | None = None,
) -> RawDataEtlPipeline:
    return RawDataEtlPipeline(
        trigger=RemoteTriggerClient(
            client,
            endpoint=settings.raw_data_etl_endpoint,
            secret=settings.API_GW_SECRET_KEY,
            timeout=settings.ETL_TRIGGER_TIMEOUT_S,
        ),
        fetcher=ArtifactFetcher(client, timeout=settings.S3_PRESIGNED_URL_TIMEOUT_S),
        proxy=LocalTransformProxy(
            client,
            base_url=settings.internal_api_base_url,
            timeout=settings.TRANSFORM_TIMEOUT_S,
        ),
        engine=engine or IngestionEngine(),
    )


@asynccontextmanager
async def open_raw_data_etl(settings: Settings | None = None) -> AsyncIterator[RawDataEtlPipeline]:
    """Build a pipeline around one HTTP client that lives for the run."""
    settings = settings or get_settings()
    async with httpx.AsyncClient() as client:
        yield build_pipeline(client, settings)
