"""
tests/helpers.py

In-memory stand-ins for the raw data ETL collaborators:

- RecordingProgressSink: records every progress event instead of streaming it
- FakeAsyncConnection: records executed SQL and answers fetchone() from
  canned rows, so the ingestion engine can be driven without PostgreSQL
- make_connect: wraps a FakeAsyncConnection in the factory the engine expects
"""

from __future__ import annotations

import json
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import pytest

from fiscalismia.etl.datasets import DatasetName
from fiscalismia.etl.progress import ProgressLevel

# Read at import time, before the autouse settings fixture blanks DATABASE_URL
_INTEGRATION_DATABASE_URL = os.environ.get("DATABASE_URL")


def integration_database_url() -> str | None:
    return _INTEGRATION_DATABASE_URL


skip_if_no_db = pytest.mark.skipif(
    not _INTEGRATION_DATABASE_URL,
    reason="DATABASE_URL not set",
)

# =============================================================================
# Progress
# =============================================================================


class RecordingProgressSink:
    """ProgressSink that keeps events in memory."""

    def __init__(self) -> None:
        self.events: list[tuple[str, ProgressLevel]] = []
        self.closed = False
        self.close_calls = 0
        self.final_payload: Any = None

    def emit(self, message: str, level: ProgressLevel | str = ProgressLevel.INFO) -> None:
        if self.closed:
            return
        self.events.append((message, ProgressLevel(level)))

    def close(self, final_payload: Any = None) -> None:
        self.close_calls += 1
        if self.closed:
            return
        self.closed = True
        self.final_payload = final_payload

    @property
    def messages(self) -> list[str]:
        return [message for message, _ in self.events]

    @property
    def errors(self) -> list[str]:
        return [message for message, level in self.events if level is ProgressLevel.ERROR]


def parse_sse_body(body: str) -> list[dict[str, Any]]:
    """Split a text/event-stream body into its JSON payloads."""
    payloads = []
    for chunk in body.split("\n\n"):
        chunk = chunk.strip()
        if chunk.startswith("data: "):
            payloads.append(json.loads(chunk[len("data: ") :]))
    return payloads


# =============================================================================
# Database
# =============================================================================

HAPPY_PATH_ROWS: list[tuple[str, dict[str, Any]]] = [
    ("pg_try_advisory_xact_lock", {"locked": True}),
    ("FROM public.staging_variable_expenses", {"cnt": 3}),
    ("fn_transform_variable_expenses", {"report": "variable_expenses: 3\nstore: 2\ncategory: 1"}),
    ("FROM public.fixed_costs", {"cnt": 4}),
    ("FROM public.fixed_income", {"cnt": 2}),
    ("FROM public.food_prices", {"cnt": 5}),
    (
        "AS investments_cnt",
        {"investments_cnt": 6, "bridge_cnt": 1, "taxes_cnt": 2, "dividends_cnt": 3},
    ),
]


def sample_batches() -> dict[DatasetName, str]:
    return {
        DatasetName.VARIABLE_EXPENSES: "INSERT INTO staging_variable_expenses VALUES (1);",
        DatasetName.FIXED_COSTS: "INSERT INTO public.fixed_costs VALUES (1);",
        DatasetName.INCOME: "INSERT INTO public.fixed_income VALUES (1);",
        DatasetName.FOOD_ITEMS: "INSERT INTO public.food_prices VALUES (1);",
        DatasetName.INVESTMENTS: "INSERT INTO public.investments VALUES (1);",
    }


class FakeCursor:
    def __init__(self, conn: "FakeAsyncConnection"):
        self._conn = conn
        self._last_sql = ""

    async def __aenter__(self) -> "FakeCursor":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None

    async def execute(self, query: str, params: Any = None) -> None:
        self._conn.executed.append(query)
        self._last_sql = query
        for fragment, exc in self._conn.failures.items():
            if fragment in query:
                raise exc

    async def fetchone(self) -> dict[str, Any] | None:
        for fragment, row in self._conn.rows:
            if fragment in self._last_sql:
                return dict(row)
        return None


class FakeAsyncConnection:
    """
    Minimal psycopg.AsyncConnection double.

    Args:
        rows: (sql fragment, row) pairs; the first fragment contained in the
            last executed statement decides what fetchone() returns
        failures: sql fragment -> exception raised by execute()
    """

    def __init__(
        self,
        rows: list[tuple[str, dict[str, Any]]] | None = None,
        failures: dict[str, Exception] | None = None,
    ):
        self.rows = list(HAPPY_PATH_ROWS if rows is None else rows)
        self.failures = dict(failures or {})
        self.executed: list[str] = []
        self.autocommit: bool | None = None
        self.committed = False
        self.rolled_back = False

    def set_row(self, fragment: str, row: dict[str, Any]) -> None:
        self.rows = [(f, r) for f, r in self.rows if f != fragment]
        self.rows.insert(0, (fragment, row))

    async def set_autocommit(self, value: bool) -> None:
        self.autocommit = value

    def cursor(self, row_factory: Any = None) -> FakeCursor:
        return FakeCursor(self)

    async def commit(self) -> None:
        self.committed = True

    async def rollback(self) -> None:
        self.rolled_back = True

    def executed_containing(self, fragment: str) -> list[str]:
        return [sql for sql in self.executed if fragment in sql]


class ConnectionFactory:
    """Callable handing out one fake connection; counts acquisitions and releases."""

    def __init__(self, conn: FakeAsyncConnection):
        self.conn = conn
        self.acquired = 0
        self.released = 0

    def __call__(self):
        return self._connect()

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[FakeAsyncConnection]:
        self.acquired += 1
        try:
            yield self.conn
        finally:
            self.released += 1


def make_connect(conn: FakeAsyncConnection | None = None) -> ConnectionFactory:
    return ConnectionFactory(conn or FakeAsyncConnection())
