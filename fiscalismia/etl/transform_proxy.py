"""
Local TSV -> SQL conversion.

Each downloaded TSV is posted to this service's own `/texttsv/<dataset>`
route, which answers with the INSERT statements for that dataset. The
caller's Authorization header is forwarded unchanged so the sub-request runs
as the same principal.
"""

from __future__ import annotations

import logging
import re

import httpx

from .datasets import DATASET_ROUTES, DatasetName
from .errors import TransformProxyError
from .fetcher import Artifact, format_size
from .progress import ProgressLevel, ProgressSink

logger = logging.getLogger(__name__)

_INSERT_RE = re.compile(r"\bINSERT\s+INTO\b", re.IGNORECASE)


def count_insert_statements(sql_batch: str) -> int:
    return len(_INSERT_RE.findall(sql_batch))


class LocalTransformProxy:
    """
    Forwards TSV payloads to the internal conversion routes.

    Args:
        client: Shared HTTP client for the run
        base_url: Base URL of the API, e.g. http://localhost:3002/api/fiscalismia
        timeout: Seconds allowed per conversion
    """

    def __init__(self, client: httpx.AsyncClient, base_url: str, timeout: float = 30.0):
        self._client = client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def route_for(self, dataset: DatasetName) -> str:
        return f"{self.base_url}{DATASET_ROUTES[dataset]}"

    async def transform(
        self,
        artifact: Artifact,
        caller_authorization: str | None,
        batches: dict[DatasetName, str],
        progress: ProgressSink,
    ) -> str:
        """
        Convert one artifact and store its SQL batch in `batches`.

        A second artifact for the same dataset replaces the earlier batch.

        Raises:
            TransformProxyError: transport failure, non-200 status or empty body
        """
        route = self.route_for(artifact.dataset)
        headers = {"Content-Type": "text/plain"}
        if caller_authorization:
            headers["Authorization"] = caller_authorization

        try:
            response = await self._client.post(
                route,
                content=artifact.content,
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as exc:
            raise TransformProxyError(route, f"timed out after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            raise TransformProxyError(route, f"{type(exc).__name__}: {exc}") from exc

        if response.status_code != 200:
            raise TransformProxyError(
                route,
                f"HTTP {response.status_code}: {response.text[:200]}",
                remote_status=response.status_code,
            )

        sql_batch = response.text
        if not sql_batch.strip():
            raise TransformProxyError(route, "empty response body", remote_status=200)

        if artifact.dataset in batches:
            logger.warning(f"Replacing earlier SQL batch for {artifact.dataset}")
        batches[artifact.dataset] = sql_batch

        progress.emit(
            f"Generated {count_insert_statements(sql_batch)} INSERT statements for "
            f"{artifact.dataset} ({format_size(len(sql_batch.encode()))}).",
            ProgressLevel.INFO,
        )
        return sql_batch
