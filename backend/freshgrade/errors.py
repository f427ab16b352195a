"""Failure kinds shared by the grading pipeline and its collaborators."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class FailureKind(str, Enum):
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    ORACLE = "oracle"
    PERSISTENCE = "persistence"
    INTERNAL = "internal"


@dataclass(eq=False)
class GradingError(Exception):
    """Base class for every failure the grading pipeline reports."""

    message: str

    kind = FailureKind.INTERNAL

    def __str__(self) -> str:
        return self.message


@dataclass(eq=False)
class NotFoundError(GradingError):
    kind = FailureKind.NOT_FOUND


@dataclass(eq=False)
class ValidationError(GradingError):
    kind = FailureKind.VALIDATION


@dataclass(eq=False)
class ConflictError(GradingError):
    kind = FailureKind.CONFLICT


@dataclass(eq=False)
class OracleError(GradingError):
    """Transport, parse or schema failure from the scoring service."""

    status_code: int | None = None
    body: str = ""

    kind = FailureKind.ORACLE


@dataclass(eq=False)
class PersistenceError(GradingError):
    kind = FailureKind.PERSISTENCE


HTTP_STATUS_BY_KIND: dict[FailureKind, int] = {
    FailureKind.NOT_FOUND: 404,
    FailureKind.VALIDATION: 422,
    FailureKind.CONFLICT: 409,
    FailureKind.ORACLE: 502,
    FailureKind.PERSISTENCE: 500,
    FailureKind.INTERNAL: 500,
}
