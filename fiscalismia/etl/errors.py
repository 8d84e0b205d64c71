"""
Raw data ETL error taxonomy.

Every failure in the ETL core derives from EtlError. Nothing is retried: the
pipeline reports the error once on the progress channel and closes it.

    EtlError
    ├── ConfigError                 server secret missing (checked first)
    ├── ETLTriggerError             API Gateway call failed / bad response shape
    ├── ArtifactDownloadError       S3 download failed or returned nothing
    ├── UnknownArtifactError        location matches no known dataset
    │   └── AmbiguousArtifactError  location matches several datasets
    ├── TransformProxyError         internal TSV -> SQL conversion failed
    ├── IncompleteBatchError        dataset missing before the transaction
    └── IngestionError              transaction rolled back
        ├── ForeignKeyViolationError
        ├── UniqueViolationError
        └── IngestionTransactionError
"""

from __future__ import annotations

from typing import Any, Iterable

from ..core.errors import (
    ERROR_BAD_GATEWAY,
    ERROR_CONFIG,
    ERROR_CONFLICT,
    ERROR_DATABASE,
    ERROR_INTERNAL,
    FiscalismiaError,
)

LAMBDA_LOG_GROUP = "/aws/lambda/Fiscalismia_RawDataETL"


class EtlError(FiscalismiaError):
    """Base exception for the raw data ETL."""

    def __init__(
        self,
        message: str,
        error_code: str = ERROR_INTERNAL,
        status_code: int = 500,
    ):
        super().__init__(message=message, error_code=error_code, status_code=status_code)


class ConfigError(EtlError):
    """A server-held setting the ETL depends on is missing."""

    def __init__(self, setting: str):
        super().__init__(
            message=f"Missing configuration: {setting} is not set.",
            error_code=ERROR_CONFIG,
            status_code=500,
        )
        self.setting = setting


class ETLTriggerError(EtlError):
    """
    The API Gateway invocation failed or answered with an unexpected shape.

    The remote status and body are preserved for diagnostics.
    """

    def __init__(
        self,
        message: str,
        remote_status: int | None = None,
        remote_body: Any = None,
    ):
        super().__init__(
            message=f"API Gateway invocation failed. {message}",
            error_code=ERROR_BAD_GATEWAY,
            status_code=502,
        )
        self.remote_status = remote_status
        self.remote_body = remote_body


class ArtifactDownloadError(EtlError):
    """A TSV file could not be downloaded from S3."""

    def __init__(self, location: str, reason: str):
        super().__init__(
            message=f"TSV download from S3 presigned_url failed for {location}: {reason}",
            error_code=ERROR_BAD_GATEWAY,
            status_code=502,
        )
        self.location = location
        self.reason = reason


class UnknownArtifactError(EtlError):
    """An artifact location does not name any known dataset."""

    def __init__(self, location: str, message: str | None = None):
        super().__init__(
            message=message
            or (
                f"Unknown ETL artifact {location}: it matches none of the known datasets. "
                f"Check the output of the serverless transform ({LAMBDA_LOG_GROUP})."
            ),
            error_code=ERROR_BAD_GATEWAY,
            status_code=502,
        )
        self.location = location


class AmbiguousArtifactError(UnknownArtifactError):
    """An artifact location names more than one known dataset."""

    def __init__(self, location: str, candidates: Iterable[str]):
        self.candidates = list(candidates)
        super().__init__(
            location=location,
            message=(
                f"Ambiguous ETL artifact {location}: it matches several datasets "
                f"({', '.join(self.candidates)})."
            ),
        )


class TransformProxyError(EtlError):
    """The internal TSV -> SQL conversion route did not return a SQL batch."""

    def __init__(self, route: str, reason: str, remote_status: int | None = None):
        super().__init__(
            message=f"SQL statement generation via {route} failed: {reason}",
            error_code=ERROR_BAD_GATEWAY,
            status_code=502,
        )
        self.route = route
        self.remote_status = remote_status


class IncompleteBatchError(EtlError):
    """Not every dataset has a SQL batch; nothing was written."""

    def __init__(self, missing: Iterable[str]):
        self.missing = sorted(missing)
        super().__init__(
            message=(
                "ETL Insertion aborted before opening a transaction. "
                f"Missing SQL batches for: {', '.join(self.missing)}"
            ),
            error_code=ERROR_INTERNAL,
            status_code=500,
        )


class IngestionError(EtlError):
    """The ingestion transaction failed and was rolled back."""

    def __init__(self, message: str, error_code: str = ERROR_DATABASE, status_code: int = 500):
        super().__init__(message=message, error_code=error_code, status_code=status_code)


class ForeignKeyViolationError(IngestionError):
    def __init__(self, detail: str):
        super().__init__(f"Foreign Key violation: {detail}", error_code=ERROR_CONFLICT, status_code=409)
        self.detail = detail


class UniqueViolationError(IngestionError):
    def __init__(self, detail: str):
        super().__init__(f"Unique Key violation: {detail}", error_code=ERROR_CONFLICT, status_code=409)
        self.detail = detail


class IngestionTransactionError(IngestionError):
    def __init__(self, original_message: str):
        super().__init__(
            f"Transaction ROLLBACK. The ETL Insertion process has failed. {original_message}"
        )
        self.original_message = original_message
