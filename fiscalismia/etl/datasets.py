"""
Raw data ETL datasets.

The serverless transform splits the source spreadsheet into one TSV file per
dataset and uploads them to S3. Each presigned URL is mapped back to its
dataset by the dataset name appearing in the object key, e.g.
`transformed/2026-02-19_19-57-01-fixed_costs.tsv`.
"""

from __future__ import annotations

from enum import Enum
from typing import Final
from urllib.parse import urlsplit

from .errors import AmbiguousArtifactError, UnknownArtifactError


class DatasetName(str, Enum):
    """One unit of transformable data produced by the raw data ETL."""

    VARIABLE_EXPENSES = "variable_expenses"
    FIXED_COSTS = "fixed_costs"
    INCOME = "income"
    FOOD_ITEMS = "food_items"
    INVESTMENTS = "investments"

    def __str__(self) -> str:
        return self.value


ALL_DATASETS: Final[tuple[DatasetName, ...]] = tuple(DatasetName)

# Internal TSV -> SQL conversion route per dataset (relative to the API address)
DATASET_ROUTES: Final[dict[DatasetName, str]] = {
    dataset: f"/texttsv/{dataset.value}" for dataset in DatasetName
}

# Table whose row count proves a directly applied batch landed
DATASET_TARGET_TABLES: Final[dict[DatasetName, str]] = {
    DatasetName.FIXED_COSTS: "public.fixed_costs",
    DatasetName.INCOME: "public.fixed_income",
    DatasetName.FOOD_ITEMS: "public.food_prices",
}


def redact_location(location: str) -> str:
    """Drop the query string; presigned URLs carry temporary credentials there."""
    parts = urlsplit(location)
    if not parts.scheme:
        return location.split("?", 1)[0]
    return f"{parts.scheme}://{parts.netloc}{parts.path}"


def resolve_dataset(location: str) -> DatasetName:
    """
    Match an artifact location against the known dataset names.

    Only the URL path is considered so that signature parameters cannot
    produce a match.

    Raises:
        UnknownArtifactError: no dataset name occurs in the location
        AmbiguousArtifactError: more than one dataset name occurs
    """
    path = urlsplit(location).path or location
    matches = [dataset for dataset in DatasetName if dataset.value in path]

    if not matches:
        raise UnknownArtifactError(location=redact_location(location))
    if len(matches) > 1:
        raise AmbiguousArtifactError(
            location=redact_location(location),
            candidates=[m.value for m in matches],
        )
    return matches[0]
