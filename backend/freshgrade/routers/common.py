"""Shared router helpers and dependencies."""

from __future__ import annotations

import json
from typing import NoReturn

from fastapi import HTTPException

from freshgrade import db
from freshgrade.ai.openai_vision import VisionGrader, get_vision_grader
from freshgrade.errors import HTTP_STATUS_BY_KIND, GradingError
from freshgrade.grading.records import SqlRecordStore
from freshgrade.models import Assignment, Submission
from freshgrade.schemas import AssignmentRead, CriterionScore, SubmissionRead


def get_record_store() -> SqlRecordStore:
    return SqlRecordStore(db.engine)


def raise_for_grading_error(exc: GradingError) -> NoReturn:
    raise HTTPException(status_code=HTTP_STATUS_BY_KIND[exc.kind], detail=str(exc)) from exc


def assignment_to_read(assignment: Assignment) -> AssignmentRead:
    return AssignmentRead(
        id=assignment.id,
        title=assignment.title,
        description=assignment.description,
        total_points=assignment.total_points,
        solution_file=assignment.solution_file,
        sample_files=json.loads(assignment.samples_json or "[]"),
        created_at=assignment.created_at,
    )


def submission_to_read(submission: Submission) -> SubmissionRead:
    scores = None
    if submission.criterion_scores_json:
        scores = [CriterionScore.model_validate(item) for item in json.loads(submission.criterion_scores_json)]
    return SubmissionRead(
        id=submission.id,
        assignment_id=submission.assignment_id,
        student_name=submission.student_name,
        student_email=submission.student_email,
        image_file=submission.image_file,
        ai_graded=submission.ai_graded,
        grade=submission.grade,
        feedback=submission.feedback,
        criterion_scores=scores,
        created_at=submission.created_at,
        graded_at=submission.graded_at,
    )


def get_grader() -> VisionGrader:
    try:
        return get_vision_grader()
    except RuntimeError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
