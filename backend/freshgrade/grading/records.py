"""SQLModel-backed record store for the grading pipeline."""

from __future__ import annotations

import json

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from freshgrade.errors import ConflictError, NotFoundError, PersistenceError
from freshgrade.models import Assignment, Rubric as RubricRow, Submission, utcnow
from freshgrade.schemas import GradingResult, Rubric


def rubric_from_row(row: RubricRow) -> Rubric:
    try:
        return Rubric.model_validate({"criteria": json.loads(row.criteria_json)})
    except (json.JSONDecodeError, PydanticValidationError) as exc:
        raise PersistenceError(f"Stored rubric for assignment {row.assignment_id} is invalid") from exc


def rubric_to_json(rubric: Rubric) -> str:
    return json.dumps([criterion.model_dump(by_alias=True) for criterion in rubric.criteria])


class SqlRecordStore:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def get_assignment(self, assignment_id: int) -> Assignment | None:
        with Session(self._engine) as session:
            return session.get(Assignment, assignment_id)

    def get_rubric(self, assignment_id: int) -> Rubric | None:
        with Session(self._engine) as session:
            row = session.exec(select(RubricRow).where(RubricRow.assignment_id == assignment_id)).first()
        if row is None:
            return None
        return rubric_from_row(row)

    def get_submission(self, submission_id: int) -> Submission | None:
        with Session(self._engine) as session:
            return session.get(Submission, submission_id)

    def list_ungraded_submissions(self, assignment_id: int) -> list[Submission]:
        with Session(self._engine) as session:
            statement = (
                select(Submission)
                .where(Submission.assignment_id == assignment_id, Submission.ai_graded == False)  # noqa: E712
                .order_by(Submission.id)
            )
            return list(session.exec(statement).all())

    def update_submission_grade(self, submission_id: int, result: GradingResult) -> Submission:
        """Apply ``result`` only if the submission is still ungraded.

        The guard lives in the UPDATE itself so two writers can never both
        flip ai_graded for the same row.
        """
        scores_json = json.dumps([score.model_dump() for score in result.criterion_scores])
        statement = (
            update(Submission)
            .where(Submission.id == submission_id, Submission.ai_graded == False)  # noqa: E712
            .values(
                grade=result.total,
                feedback=result.overall,
                criterion_scores_json=scores_json,
                ai_graded=True,
                graded_at=utcnow(),
            )
        )
        try:
            with Session(self._engine) as session:
                changed = session.exec(statement).rowcount
                if changed == 0:
                    session.rollback()
                    if session.get(Submission, submission_id) is None:
                        raise NotFoundError("Submission not found")
                    raise ConflictError(f"Submission {submission_id} is already graded")
                session.commit()
                updated = session.get(Submission, submission_id)
                if updated is None:
                    raise PersistenceError(f"Submission {submission_id} vanished after grade update")
                return updated
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to save grade for submission {submission_id}: {exc}") from exc
