"""
Fiscalismia - Raw Data ETL Ingestion

Applies the SQL batches of one ETL run inside a single transaction. The
steps are ordered by foreign key dependency:

    variable_expenses   staging load -> fn_transform_variable_expenses() -> truncate
    fixed_costs         direct insert, row count verified
    income              direct insert into fixed_income, row count verified
    food_items          direct insert into food_prices, row count verified
    investments         direct insert, four related counts verified

Either every dataset is committed or nothing is.
"""

from __future__ import annotations

import re
from contextlib import AbstractAsyncContextManager
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Mapping, Optional

import psycopg
from psycopg.rows import dict_row

from ..core.logging import LogContext, get_logger
from ..db import get_connection
from .datasets import ALL_DATASETS, DATASET_TARGET_TABLES, DatasetName
from .db_errors import ForeignKeyViolation, UniqueViolation, classify_db_error
from .errors import (
    ForeignKeyViolationError,
    IncompleteBatchError,
    IngestionTransactionError,
    UniqueViolationError,
)
from .progress import ProgressLevel, ProgressSink

logger = get_logger(__name__)

# Key of the transaction-scoped advisory lock serialising ingestion runs
INGESTION_LOCK_KEY = 7_301_955_010

STAGING_TABLE = "public.staging_variable_expenses"

INVESTMENT_COUNTS_QUERY = """
SELECT
    (SELECT COUNT(*) FROM public.investments) AS investments_cnt,
    (SELECT COUNT(*) FROM public.bridge_investment_dividends) AS bridge_cnt,
    (SELECT COUNT(*) FROM public.investment_taxes) AS taxes_cnt,
    (SELECT COUNT(*) FROM public.investment_dividends) AS dividends_cnt
"""

INVESTMENT_COUNT_KEYS = {
    "investments": "investments_cnt",
    "bridge": "bridge_cnt",
    "taxes": "taxes_cnt",
    "dividends": "dividends_cnt",
}

_REPORT_LINE_RE = re.compile(r"(?P<table>[A-Za-z_][\w.]*)\s*[:=]\s*(?P<count>\d+)")

ConnectionFactory = Callable[[], AbstractAsyncContextManager[psycopg.AsyncConnection]]


class IngestionStepError(Exception):
    """A verification inside the transaction failed; triggers rollback."""


@dataclass
class IngestionRunState:
    """Per-dataset results of one ingestion, returned only after commit."""

    variable_expenses: dict[str, int] = field(default_factory=dict)
    fixed_costs: Optional[int] = None
    income: Optional[int] = None
    food_items: Optional[int] = None
    investments: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def parse_transform_report(report: str | None) -> dict[str, int]:
    """
    Parse the text returned by fn_transform_variable_expenses().

    The function reports one `<table>: <rows>` pair per migrated table,
    separated by newlines, commas or semicolons:

        >>> parse_transform_report("variable_expenses: 412, store: 17; category = 9")
        {'variable_expenses': 412, 'store': 17, 'category': 9}
    """
    if not report:
        return {}
    return {
        match.group("table"): int(match.group("count"))
        for match in _REPORT_LINE_RE.finditer(report)
    }


class IngestionEngine:
    """
    Transactional writer for the five raw data ETL datasets.

    Args:
        connect: Zero-argument callable returning an async context manager
            that yields a psycopg AsyncConnection. Defaults to the pool.
    """

    def __init__(self, connect: ConnectionFactory = get_connection):
        self._connect = connect

    async def ingest(
        self,
        batches: Mapping[DatasetName, str],
        progress: ProgressSink | None = None,
    ) -> dict[str, Any]:
        """
        Apply every dataset's batch and commit, or roll back entirely.

        Raises:
            IncompleteBatchError: a dataset has no batch (no connection is taken)
            ForeignKeyViolationError: a batch references a missing parent row
            UniqueViolationError: a batch duplicates an existing key
            IngestionTransactionError: any other failure inside the transaction
        """
        missing = [dataset.value for dataset in ALL_DATASETS if dataset not in batches]
        if missing:
            raise IncompleteBatchError(missing)

        state = IngestionRunState()

        async with self._connect() as conn:
            await conn.set_autocommit(False)
            try:
                async with conn.cursor(row_factory=dict_row) as cur:
                    await self._acquire_lock(cur)
                    await self._apply_variable_expenses(cur, batches, state, progress)
                    state.fixed_costs = await self._apply_counted(
                        cur, DatasetName.FIXED_COSTS, batches, progress
                    )
                    state.income = await self._apply_counted(
                        cur, DatasetName.INCOME, batches, progress
                    )
                    state.food_items = await self._apply_counted(
                        cur, DatasetName.FOOD_ITEMS, batches, progress
                    )
                    await self._apply_investments(cur, batches, state, progress)
                await conn.commit()
            except Exception as exc:
                try:
                    await conn.rollback()
                except psycopg.Error as rollback_exc:
                    logger.error(f"ETL ingestion rollback failed: {type(rollback_exc).__name__}: {rollback_exc}")
                logger.error(
                    f"ETL ingestion rolled back: {type(exc).__name__}: {exc}",
                )
                raise _to_ingestion_error(exc) from exc

        logger.info("ETL ingestion committed", extra={"summary": state.to_dict()})
        return state.to_dict()

    async def _acquire_lock(self, cur: psycopg.AsyncCursor) -> None:
        await cur.execute(
            "SELECT pg_try_advisory_xact_lock(%s) AS locked", (INGESTION_LOCK_KEY,)
        )
        row = await cur.fetchone()
        if not row or not row.get("locked"):
            raise IngestionStepError("Another raw data ETL ingestion is already in progress.")

    async def _apply_variable_expenses(
        self,
        cur: psycopg.AsyncCursor,
        batches: Mapping[DatasetName, str],
        state: IngestionRunState,
        progress: ProgressSink | None,
    ) -> None:
        dataset = DatasetName.VARIABLE_EXPENSES
        with LogContext(dataset=dataset.value):
            await cur.execute(batches[dataset])

            staged = await _count_rows(cur, STAGING_TABLE)
            if staged == 0:
                raise IngestionStepError(
                    f"No rows were staged in {STAGING_TABLE}; the variable_expenses batch inserted nothing."
                )

            await cur.execute("SELECT fn_transform_variable_expenses() AS report")
            row = await cur.fetchone()
            report = row.get("report") if row else None
            state.variable_expenses = parse_transform_report(report)

            # Marks the staged data as consumed
            await cur.execute(f"TRUNCATE {STAGING_TABLE}")

            logger.info(f"Staged {staged} rows, transformed: {state.variable_expenses}")
        _emit(
            progress,
            f"{dataset}: {staged} staged rows transformed into {state.variable_expenses}.",
        )

    async def _apply_counted(
        self,
        cur: psycopg.AsyncCursor,
        dataset: DatasetName,
        batches: Mapping[DatasetName, str],
        progress: ProgressSink | None,
    ) -> int:
        table = DATASET_TARGET_TABLES[dataset]
        with LogContext(dataset=dataset.value):
            await cur.execute(batches[dataset])
            count = await _count_rows(cur, table)
            if count == 0:
                raise IngestionStepError(f"{table} is empty after applying the {dataset} batch.")
            logger.info(f"{table} holds {count} rows")
        _emit(progress, f"{dataset}: {count} rows in {table}.")
        return count

    async def _apply_investments(
        self,
        cur: psycopg.AsyncCursor,
        batches: Mapping[DatasetName, str],
        state: IngestionRunState,
        progress: ProgressSink | None,
    ) -> None:
        dataset = DatasetName.INVESTMENTS
        with LogContext(dataset=dataset.value):
            await cur.execute(batches[dataset])
            await cur.execute(INVESTMENT_COUNTS_QUERY)
            row = await cur.fetchone()
            if not row or any(row.get(key) is None for key in INVESTMENT_COUNT_KEYS.values()):
                raise IngestionStepError("The client query for investments did not succeed.")
            state.investments = {
                name: int(row[key]) for name, key in INVESTMENT_COUNT_KEYS.items()
            }
            logger.info(f"Investment counts: {state.investments}")
        _emit(progress, f"{dataset}: {state.investments}.")


async def _count_rows(cur: psycopg.AsyncCursor, table: str) -> int:
    await cur.execute(f"SELECT COUNT(*) AS cnt FROM {table}")
    row = await cur.fetchone()
    return int(row["cnt"]) if row else 0


def _emit(progress: ProgressSink | None, message: str) -> None:
    if progress is not None:
        progress.emit(message, ProgressLevel.INFO)


def _to_ingestion_error(exc: Exception) -> Exception:
    kind = classify_db_error(exc)
    if isinstance(kind, ForeignKeyViolation):
        return ForeignKeyViolationError(kind.detail)
    if isinstance(kind, UniqueViolation):
        return UniqueViolationError(kind.detail)
    return IngestionTransactionError(kind.message)
