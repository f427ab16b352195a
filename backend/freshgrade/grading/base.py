"""Grading pipeline interfaces."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from freshgrade.errors import GradingError, NotFoundError
from freshgrade.models import Assignment, Submission
from freshgrade.schemas import GradingResult, Rubric


class RecordStore(Protocol):
    """Persistent records consumed by the grading pipeline."""

    def get_assignment(self, assignment_id: int) -> Assignment | None:
        """Return the assignment or None."""

    def get_rubric(self, assignment_id: int) -> Rubric | None:
        """Return the assignment's rubric or None."""

    def get_submission(self, submission_id: int) -> Submission | None:
        """Return the submission or None."""

    def list_ungraded_submissions(self, assignment_id: int) -> list[Submission]:
        """Return submissions with ai_graded == False in stable order."""

    def update_submission_grade(self, submission_id: int, result: GradingResult) -> Submission:
        """Atomically apply a grading result and mark the submission graded."""


@dataclass(frozen=True)
class GradingContext:
    """Per-assignment inputs shared by every item in a run."""

    assignment_id: int
    solution_file: str
    rubric: Rubric


def load_grading_context(store: RecordStore, assignment_id: int) -> GradingContext:
    assignment = store.get_assignment(assignment_id)
    if assignment is None:
        raise NotFoundError("Assignment not found")
    rubric = store.get_rubric(assignment_id)
    if rubric is None:
        raise NotFoundError("Rubric not found")
    return GradingContext(assignment_id=assignment_id, solution_file=assignment.solution_file, rubric=rubric)


@dataclass
class ItemOutcome:
    submission_id: int
    grade: float | None = None
    error: GradingError | None = None
    warnings: list[str] = field(default_factory=list)
    submission: Submission | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failed(cls, submission_id: int, error: GradingError) -> "ItemOutcome":
        return cls(submission_id=submission_id, error=error)
