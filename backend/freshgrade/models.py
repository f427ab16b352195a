"""SQLModel ORM models for FreshGrade."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Return timezone-aware UTC now timestamp."""
    return datetime.now(timezone.utc)


class Assignment(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    description: str
    total_points: int
    solution_file: str
    samples_json: str = "[]"
    created_at: datetime = Field(default_factory=utcnow)


class Rubric(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    assignment_id: int = Field(foreign_key="assignment.id", index=True, unique=True)
    criteria_json: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Submission(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    assignment_id: int = Field(foreign_key="assignment.id", index=True)
    student_name: str
    student_email: str
    image_file: str
    ai_graded: bool = Field(default=False, index=True)
    grade: Optional[float] = None
    feedback: Optional[str] = None
    criterion_scores_json: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    graded_at: Optional[datetime] = None
