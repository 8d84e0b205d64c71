"""
Downloads the TSV files produced by the serverless ETL from S3.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from .datasets import DatasetName, redact_location, resolve_dataset
from .errors import ArtifactDownloadError
from .progress import ProgressLevel, ProgressSink

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Artifact:
    """Raw TSV payload of one dataset, held only for the duration of a run."""

    dataset: DatasetName
    location: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


def format_size(num_bytes: int) -> str:
    if num_bytes < 1024:
        return f"{num_bytes} B"
    return f"{num_bytes / 1024:.1f} KB"


class ArtifactFetcher:
    """
    Resolves presigned URLs to (dataset, bytes).

    Args:
        client: Shared HTTP client for the run
        timeout: Seconds allowed per download
    """

    def __init__(self, client: httpx.AsyncClient, timeout: float = 10.0):
        self._client = client
        self.timeout = timeout

    async def fetch(self, location: str, progress: ProgressSink) -> Artifact:
        """
        Download one artifact.

        The dataset is resolved before downloading, so a location that names
        no known dataset fails without a request.

        Raises:
            UnknownArtifactError: location matches no (or several) datasets
            ArtifactDownloadError: transport failure, error status or empty body
        """
        dataset = resolve_dataset(location)
        safe_location = redact_location(location)

        try:
            response = await self._client.get(location, timeout=self.timeout)
        except httpx.TimeoutException as exc:
            raise ArtifactDownloadError(safe_location, f"timed out after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            raise ArtifactDownloadError(safe_location, f"{type(exc).__name__}: {exc}") from exc

        if not response.is_success:
            raise ArtifactDownloadError(safe_location, f"HTTP {response.status_code}")

        content = response.content
        if not content or not content.strip():
            raise ArtifactDownloadError(safe_location, "empty payload")

        artifact = Artifact(dataset=dataset, location=location, content=content)
        progress.emit(
            f"TSV payload for {dataset} retrieved successfully from S3 "
            f"({format_size(artifact.size)}).",
            ProgressLevel.INFO,
        )
        return artifact
