"""Single-submission grading operation."""

from __future__ import annotations

import asyncio
import logging

from freshgrade.ai.openai_vision import VisionGrader
from freshgrade.errors import ConflictError, GradingError, PersistenceError
from freshgrade.grading.base import GradingContext, ItemOutcome, RecordStore
from freshgrade.models import Submission
from freshgrade.storage_provider import StorageProvider

logger = logging.getLogger(__name__)


async def grade_submission(
    submission: Submission,
    context: GradingContext,
    *,
    store: RecordStore,
    images: StorageProvider,
    grader: VisionGrader,
) -> ItemOutcome:
    """Grade one submission and persist the result.

    Every expected failure is returned as a failed ``ItemOutcome`` with the
    record left untouched. Only unexpected exception types escape.
    """
    submission_id = submission.id
    log_extra = {"assignment_id": context.assignment_id, "submission_id": submission_id}

    if submission.ai_graded:
        return ItemOutcome.failed(submission_id, ConflictError(f"Submission {submission_id} is already graded"))

    try:
        submission_image = await images.read_image(context.assignment_id, submission.image_file)
        solution_image = await images.read_image(context.assignment_id, context.solution_file)
        result = await asyncio.to_thread(grader.grade, submission_image, solution_image, context.rubric)
    except GradingError as exc:
        logger.warning("grade/item failed", extra={**log_extra, "stage": "call_oracle", "kind": exc.kind.value, "error": str(exc)})
        return ItemOutcome.failed(submission_id, exc)

    if result.warnings:
        logger.warning("grade/item discrepancy", extra={**log_extra, "stage": "validate_output", "warnings": result.warnings})

    try:
        updated = await asyncio.to_thread(store.update_submission_grade, submission_id, result)
    except PersistenceError as exc:
        logger.error(
            "grade/item result lost after persistence failure",
            extra={**log_extra, "stage": "save_grade", "error": str(exc), "result": result.model_dump(by_alias=True)},
        )
        return ItemOutcome.failed(submission_id, exc)
    except GradingError as exc:
        logger.warning("grade/item not saved", extra={**log_extra, "stage": "save_grade", "kind": exc.kind.value, "error": str(exc)})
        return ItemOutcome.failed(submission_id, exc)

    logger.info("grade/item done", extra={**log_extra, "stage": "save_grade", "grade": updated.grade})
    return ItemOutcome(
        submission_id=submission_id,
        grade=updated.grade,
        warnings=list(result.warnings),
        submission=updated,
    )
