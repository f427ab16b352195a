"""Submission endpoints, including single-item grading retries."""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response

from freshgrade.ai.openai_vision import VisionGrader
from freshgrade.errors import ConflictError, GradingError
from freshgrade.grading.base import load_grading_context
from freshgrade.grading.records import SqlRecordStore
from freshgrade.grading.single import grade_submission
from freshgrade.routers.common import get_grader, get_record_store, raise_for_grading_error, submission_to_read
from freshgrade.schemas import SubmissionGradeResponse, SubmissionRead
from freshgrade.storage_provider import StorageProvider, get_storage_provider

router = APIRouter(prefix="/submissions", tags=["submissions"])


@router.get("/{submission_id}", response_model=SubmissionRead)
def get_submission(submission_id: int, store: SqlRecordStore = Depends(get_record_store)) -> SubmissionRead:
    submission = store.get_submission(submission_id)
    if not submission:
        raise HTTPException(status_code=404, detail="Submission not found")
    return submission_to_read(submission)


@router.get("/{submission_id}/image")
async def get_submission_image(
    submission_id: int,
    store: SqlRecordStore = Depends(get_record_store),
    images: StorageProvider = Depends(get_storage_provider),
) -> Response:
    submission = await asyncio.to_thread(store.get_submission, submission_id)
    if not submission:
        raise HTTPException(status_code=404, detail="Submission not found")
    try:
        data = await images.read_image(submission.assignment_id, submission.image_file)
    except GradingError as exc:
        raise_for_grading_error(exc)
    return Response(content=data, media_type="image/png")


@router.post("/{submission_id}/ai-grade", response_model=SubmissionGradeResponse)
async def ai_grade_submission(
    submission_id: int,
    store: SqlRecordStore = Depends(get_record_store),
    images: StorageProvider = Depends(get_storage_provider),
    grader: VisionGrader = Depends(get_grader),
) -> SubmissionGradeResponse:
    submission = await asyncio.to_thread(store.get_submission, submission_id)
    if not submission:
        raise HTTPException(status_code=404, detail="Submission not found")
    if submission.ai_graded:
        raise_for_grading_error(ConflictError(f"Submission {submission_id} is already graded"))

    try:
        context = await asyncio.to_thread(load_grading_context, store, submission.assignment_id)
    except GradingError as exc:
        raise_for_grading_error(exc)

    outcome = await grade_submission(submission, context, store=store, images=images, grader=grader)
    if outcome.error is not None:
        raise_for_grading_error(outcome.error)
    return SubmissionGradeResponse(submission=submission_to_read(outcome.submission), warnings=outcome.warnings)
