"""Assignment, rubric and batch grading endpoints."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from fastapi.responses import StreamingResponse
from pydantic import ValidationError as PydanticValidationError
from sqlmodel import Session, select

from freshgrade.ai.openai_vision import VisionGrader
from freshgrade.db import get_session
from freshgrade.grading.dispatcher import BatchDispatcher
from freshgrade.grading.events import STREAM_HEADERS, encode_stream
from freshgrade.grading.records import SqlRecordStore, rubric_from_row, rubric_to_json
from freshgrade.models import Assignment, Rubric as RubricRow, Submission, utcnow
from freshgrade.routers.common import assignment_to_read, get_grader, get_record_store, submission_to_read
from freshgrade.schemas import AssignmentDetail, AssignmentRead, Rubric, RubricIn, RubricRead, SubmissionRead
from freshgrade.settings import settings
from freshgrade.storage import new_image_filename
from freshgrade.storage_provider import StorageProvider, get_storage_provider

router = APIRouter(prefix="/assignments", tags=["assignments"])
logger = logging.getLogger(__name__)

_ALLOWED_IMAGE_TYPE = "image/png"


async def _read_png_upload(upload: UploadFile, label: str) -> bytes:
    if (upload.content_type or "") != _ALLOWED_IMAGE_TYPE:
        raise HTTPException(status_code=400, detail=f"{label} must be a PNG image.")
    data = await upload.read()
    if not data:
        raise HTTPException(status_code=400, detail=f"{label} is empty.")
    if len(data) > settings.max_upload_mb * 1024 * 1024:
        raise HTTPException(status_code=413, detail=f"{label} exceeds {settings.max_upload_mb} MB limit.")
    return data


def _get_assignment_or_404(session: Session, assignment_id: int) -> Assignment:
    assignment = session.get(Assignment, assignment_id)
    if not assignment:
        raise HTTPException(status_code=404, detail="Assignment not found")
    return assignment


def _rubric_read(row: RubricRow) -> RubricRead:
    rubric = rubric_from_row(row)
    return RubricRead(assignment_id=row.assignment_id, criteria=list(rubric.criteria), updated_at=row.updated_at)


@router.post("", response_model=AssignmentRead, status_code=status.HTTP_201_CREATED)
async def create_assignment(
    title: str = Form(...),
    description: str = Form(...),
    total_points: int = Form(...),
    solution: UploadFile = File(...),
    samples: list[UploadFile] | None = File(default=None),
    session: Session = Depends(get_session),
    images: StorageProvider = Depends(get_storage_provider),
) -> AssignmentRead:
    if not title.strip() or not description.strip():
        raise HTTPException(status_code=400, detail="Missing required fields.")
    if total_points <= 0:
        raise HTTPException(status_code=400, detail="total_points must be a positive integer.")
    samples = samples or []
    if len(samples) > settings.max_sample_images:
        raise HTTPException(status_code=400, detail=f"At most {settings.max_sample_images} sample images are allowed.")

    solution_bytes = await _read_png_upload(solution, "Solution image")

    assignment = Assignment(
        title=title.strip(),
        description=description.strip(),
        total_points=total_points,
        solution_file=new_image_filename("png"),
    )
    session.add(assignment)
    session.commit()
    session.refresh(assignment)

    await images.put_image(assignment.id, assignment.solution_file, solution_bytes, _ALLOWED_IMAGE_TYPE)

    sample_files: list[str] = []
    for sample in samples:
        # Non-PNG samples are skipped rather than rejected.
        if (sample.content_type or "") != _ALLOWED_IMAGE_TYPE:
            continue
        data = await _read_png_upload(sample, "Sample image")
        filename = new_image_filename("png")
        await images.put_image(assignment.id, filename, data, _ALLOWED_IMAGE_TYPE)
        sample_files.append(filename)

    assignment.samples_json = json.dumps(sample_files)
    session.add(assignment)
    session.commit()
    session.refresh(assignment)

    logger.info(
        "assignment created",
        extra={"assignment_id": assignment.id, "stage": "create_assignment", "samples": len(sample_files)},
    )
    return assignment_to_read(assignment)


@router.get("", response_model=list[AssignmentRead])
def list_assignments(session: Session = Depends(get_session)) -> list[AssignmentRead]:
    assignments = session.exec(select(Assignment).order_by(Assignment.created_at.desc(), Assignment.id.desc())).all()
    return [assignment_to_read(a) for a in assignments]


@router.get("/{assignment_id}", response_model=AssignmentDetail)
def get_assignment(assignment_id: int, session: Session = Depends(get_session)) -> AssignmentDetail:
    assignment = _get_assignment_or_404(session, assignment_id)
    rubric_row = session.exec(select(RubricRow).where(RubricRow.assignment_id == assignment_id)).first()
    submissions = session.exec(select(Submission).where(Submission.assignment_id == assignment_id).order_by(Submission.id)).all()
    return AssignmentDetail(
        assignment=assignment_to_read(assignment),
        rubric=_rubric_read(rubric_row) if rubric_row else None,
        submissions=[submission_to_read(s) for s in submissions],
    )


@router.put("/{assignment_id}/rubric", response_model=RubricRead)
def put_rubric(assignment_id: int, payload: RubricIn, session: Session = Depends(get_session)) -> RubricRead:
    _get_assignment_or_404(session, assignment_id)
    try:
        rubric = Rubric(criteria=tuple(payload.criteria))
    except PydanticValidationError as exc:
        raise HTTPException(status_code=422, detail=[err["msg"] for err in exc.errors()]) from exc

    row = session.exec(select(RubricRow).where(RubricRow.assignment_id == assignment_id)).first()
    if row:
        row.criteria_json = rubric_to_json(rubric)
        row.updated_at = utcnow()
    else:
        row = RubricRow(assignment_id=assignment_id, criteria_json=rubric_to_json(rubric))
    session.add(row)
    session.commit()
    session.refresh(row)
    return _rubric_read(row)


@router.get("/{assignment_id}/rubric", response_model=RubricRead)
def get_rubric(assignment_id: int, session: Session = Depends(get_session)) -> RubricRead:
    _get_assignment_or_404(session, assignment_id)
    row = session.exec(select(RubricRow).where(RubricRow.assignment_id == assignment_id)).first()
    if not row:
        raise HTTPException(status_code=404, detail="Rubric not found")
    return _rubric_read(row)


@router.post("/{assignment_id}/submissions", response_model=SubmissionRead, status_code=status.HTTP_201_CREATED)
async def create_submission(
    assignment_id: int,
    student_name: str = Form(...),
    student_email: str = Form(...),
    submission: UploadFile = File(...),
    session: Session = Depends(get_session),
    images: StorageProvider = Depends(get_storage_provider),
) -> SubmissionRead:
    if not student_name.strip() or not student_email.strip():
        raise HTTPException(status_code=400, detail="student_name and student_email are required.")
    _get_assignment_or_404(session, assignment_id)

    data = await _read_png_upload(submission, "Submission image")
    filename = new_image_filename("png")
    await images.put_image(assignment_id, filename, data, _ALLOWED_IMAGE_TYPE)

    row = Submission(
        assignment_id=assignment_id,
        student_name=student_name.strip(),
        student_email=student_email.strip(),
        image_file=filename,
    )
    session.add(row)
    session.commit()
    session.refresh(row)
    return submission_to_read(row)


@router.get("/{assignment_id}/submissions", response_model=list[SubmissionRead])
def list_submissions(assignment_id: int, session: Session = Depends(get_session)) -> list[SubmissionRead]:
    _get_assignment_or_404(session, assignment_id)
    rows = session.exec(select(Submission).where(Submission.assignment_id == assignment_id).order_by(Submission.id)).all()
    return [submission_to_read(s) for s in rows]


@router.post("/{assignment_id}/bulk-ai-grade")
def bulk_ai_grade(
    assignment_id: int,
    store: SqlRecordStore = Depends(get_record_store),
    images: StorageProvider = Depends(get_storage_provider),
    grader: VisionGrader = Depends(get_grader),
) -> StreamingResponse:
    dispatcher = BatchDispatcher(store, images, grader, concurrency=settings.grading_concurrency)
    return StreamingResponse(
        encode_stream(dispatcher.run(assignment_id)),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
    )
