"""
Raw data ETL: API Gateway trigger, S3 download, TSV -> SQL conversion and
transactional ingestion, reported live over server-sent events.
"""

from .datasets import ALL_DATASETS, DATASET_ROUTES, DatasetName, resolve_dataset
from .errors import (
    AmbiguousArtifactError,
    ArtifactDownloadError,
    ConfigError,
    ETLTriggerError,
    EtlError,
    ForeignKeyViolationError,
    IncompleteBatchError,
    IngestionError,
    IngestionTransactionError,
    TransformProxyError,
    UniqueViolationError,
    UnknownArtifactError,
)
from .fetcher import Artifact, ArtifactFetcher
from .ingestion import IngestionEngine, IngestionRunState, parse_transform_report
from .pipeline import EtlRunGuard, RawDataEtlPipeline, etl_run_guard, open_raw_data_etl
from .progress import ProgressLevel, ProgressSink, SSEProgressChannel
from .transform_proxy import LocalTransformProxy
from .trigger import RemoteTriggerClient

__all__ = [
    "ALL_DATASETS",
    "DATASET_ROUTES",
    "AmbiguousArtifactError",
    "Artifact",
    "ArtifactDownloadError",
    "ArtifactFetcher",
    "ConfigError",
    "DatasetName",
    "ETLTriggerError",
    "EtlError",
    "EtlRunGuard",
    "ForeignKeyViolationError",
    "IncompleteBatchError",
    "IngestionEngine",
    "IngestionError",
    "IngestionRunState",
    "IngestionTransactionError",
    "LocalTransformProxy",
    "ProgressLevel",
    "ProgressSink",
    "RawDataEtlPipeline",
    "RemoteTriggerClient",
    "SSEProgressChannel",
    "TransformProxyError",
    "UniqueViolationError",
    "UnknownArtifactError",
    "etl_run_guard",
    "open_raw_data_etl",
    "parse_transform_report",
    "resolve_dataset",
]
