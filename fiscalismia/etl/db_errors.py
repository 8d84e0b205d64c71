"""
Driver-independent view of ingestion failures.

classify_db_error() is the only place that inspects psycopg exceptions; the
ingestion engine branches on the returned variant.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

import psycopg
from psycopg import errors as pg_errors

SQLSTATE_FOREIGN_KEY_VIOLATION = "23503"
SQLSTATE_UNIQUE_VIOLATION = "23505"


@dataclass(frozen=True)
class ForeignKeyViolation:
    detail: str


@dataclass(frozen=True)
class UniqueViolation:
    detail: str


@dataclass(frozen=True)
class OtherDbError:
    message: str


DbErrorKind = Union[ForeignKeyViolation, UniqueViolation, OtherDbError]


def _detail(exc: psycopg.Error) -> str:
    diag = getattr(exc, "diag", None)
    if diag is not None:
        detail = diag.message_detail or diag.message_primary
        if detail:
            return detail
    return str(exc).strip()


def classify_db_error(exc: BaseException) -> DbErrorKind:
    """
    Map an exception raised during ingestion to a tagged variant.

    Integrity violations are recognised by exception class first and by
    SQLSTATE second, so errors re-raised by other layers still classify.
    """
    if isinstance(exc, psycopg.Error):
        sqlstate = getattr(exc, "sqlstate", None)
        if isinstance(exc, pg_errors.ForeignKeyViolation) or sqlstate == SQLSTATE_FOREIGN_KEY_VIOLATION:
            return ForeignKeyViolation(_detail(exc))
        if isinstance(exc, pg_errors.UniqueViolation) or sqlstate == SQLSTATE_UNIQUE_VIOLATION:
            return UniqueViolation(_detail(exc))
        return OtherDbError(str(exc).strip() or type(exc).__name__)
    return OtherDbError(str(exc) or type(exc).__name__)
