"""Domain and request/response schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RubricCriterion(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(min_length=1)
    description: str
    max_points: float = Field(gt=0, validation_alias="maxPoints", serialization_alias="maxPoints")

    @field_validator("id")
    @classmethod
    def _strip_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("criterion id must not be blank")
        return value


class Rubric(BaseModel):
    """Ordered criteria for one assignment, immutable for the length of a run."""

    model_config = ConfigDict(frozen=True)

    criteria: tuple[RubricCriterion, ...] = Field(min_length=1)

    @field_validator("criteria")
    @classmethod
    def _unique_ids(cls, value: tuple[RubricCriterion, ...]) -> tuple[RubricCriterion, ...]:
        seen: set[str] = set()
        for criterion in value:
            if criterion.id in seen:
                raise ValueError(f"duplicate criterion id: {criterion.id}")
            seen.add(criterion.id)
        return value

    @property
    def max_points_by_id(self) -> dict[str, float]:
        return {criterion.id: criterion.max_points for criterion in self.criteria}


class CriterionScore(BaseModel):
    id: str
    earned: float
    comment: str = ""


class GradingResult(BaseModel):
    """Reconciled oracle output for exactly one submission."""

    model_config = ConfigDict(populate_by_name=True)

    criterion_scores: list[CriterionScore] = Field(validation_alias="criterionScores", serialization_alias="criterionScores")
    total: float
    overall: str
    warnings: list[str] = Field(default_factory=list, exclude=True)

    @property
    def earned_sum(self) -> float:
        return sum(score.earned for score in self.criterion_scores)


class RubricIn(BaseModel):
    criteria: list[RubricCriterion]


class RubricRead(BaseModel):
    assignment_id: int
    criteria: list[RubricCriterion]
    updated_at: datetime


class AssignmentRead(BaseModel):
    id: int
    title: str
    description: str
    total_points: int
    solution_file: str
    sample_files: list[str] = Field(default_factory=list)
    created_at: datetime


class SubmissionRead(BaseModel):
    id: int
    assignment_id: int
    student_name: str
    student_email: str
    image_file: str
    ai_graded: bool
    grade: float | None
    feedback: str | None
    criterion_scores: list[CriterionScore] | None
    created_at: datetime
    graded_at: datetime | None = None


class AssignmentDetail(BaseModel):
    assignment: AssignmentRead
    rubric: RubricRead | None
    submissions: list[SubmissionRead] = Field(default_factory=list)


class SubmissionGradeResponse(BaseModel):
    submission: SubmissionRead
    warnings: list[str] = Field(default_factory=list)
