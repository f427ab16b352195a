from __future__ import annotations

import asyncio
import json
import threading
import time

import pytest

from freshgrade.ai.openai_vision import parse_grading_response
from freshgrade.errors import ConflictError, NotFoundError, PersistenceError
from freshgrade.grading.dispatcher import BatchDispatcher, CompletionCounter, DispatchState
from freshgrade.grading.events import StreamEvent
from freshgrade.models import Assignment, Submission
from freshgrade.schemas import GradingResult, Rubric, RubricCriterion

SOLUTION = b"solution-image"


def _rubric() -> Rubric:
    return Rubric(
        criteria=(
            RubricCriterion(id="c1", description="Method", max_points=10),
            RubricCriterion(id="c2", description="Answer", max_points=5),
        )
    )


def _ok_response(c1: float = 8, c2: float = 4, total: float | None = None) -> str:
    return json.dumps(
        {
            "criterionScores": [
                {"id": "c1", "earned": c1, "comment": "method"},
                {"id": "c2", "earned": c2, "comment": "answer"},
            ],
            "total": c1 + c2 if total is None else total,
            "overall": "Nice work",
        }
    )


class FakeStore:
    def __init__(self, submissions: list[Submission], rubric: Rubric | None = None, has_assignment: bool = True) -> None:
        self.submissions = {s.id: s for s in submissions}
        self.rubric = rubric if rubric is not None else _rubric()
        self.has_assignment = has_assignment
        self.list_error: Exception | None = None
        self.fail_updates: set[int] = set()
        self.updated: list[int] = []
        self._lock = threading.Lock()

    def get_assignment(self, assignment_id: int) -> Assignment | None:
        if not self.has_assignment:
            return None
        return Assignment(id=assignment_id, title="Lab 1", description="Draw it", total_points=15, solution_file="solution.png")

    def get_rubric(self, assignment_id: int) -> Rubric | None:
        return self.rubric

    def get_submission(self, submission_id: int) -> Submission | None:
        return self.submissions.get(submission_id)

    def list_ungraded_submissions(self, assignment_id: int) -> list[Submission]:
        if self.list_error is not None:
            raise self.list_error
        return [s for s in sorted(self.submissions.values(), key=lambda s: s.id) if not s.ai_graded]

    def update_submission_grade(self, submission_id: int, result: GradingResult) -> Submission:
        with self._lock:
            submission = self.submissions.get(submission_id)
            if submission is None:
                raise NotFoundError("Submission not found")
            if submission_id in self.fail_updates:
                raise PersistenceError("disk full")
            if submission.ai_graded:
                raise ConflictError("already graded")
            submission.grade = result.total
            submission.feedback = result.overall
            submission.criterion_scores_json = json.dumps([s.model_dump() for s in result.criterion_scores])
            submission.ai_graded = True
            self.updated.append(submission_id)
            return submission


class FakeImages:
    def __init__(self, blobs: dict[tuple[int, str], bytes]) -> None:
        self.blobs = blobs

    async def read_image(self, assignment_id: int, filename: str) -> bytes:
        try:
            return self.blobs[(assignment_id, filename)]
        except KeyError as exc:
            raise NotFoundError(f"Image not found: {assignment_id}/{filename}") from exc


class FakeGrader:
    """Answers by submission image bytes and tracks simultaneous calls."""

    def __init__(self, responses: dict[bytes, str], delay: float = 0.02) -> None:
        self.responses = responses
        self.delay = delay
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def grade(self, submission_image: bytes, solution_image: bytes, rubric: Rubric) -> GradingResult:
        assert solution_image == SOLUTION
        with self._lock:
            self.calls += 1
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            time.sleep(self.delay)
            response = self.responses[submission_image]
            if isinstance(response, Exception):
                raise response
            return parse_grading_response(response, rubric)
        finally:
            with self._lock:
                self.in_flight -= 1


def _submissions(count: int) -> list[Submission]:
    return [
        Submission(id=i, assignment_id=1, student_name=f"Student {i}", student_email=f"s{i}@example.com", image_file=f"sub{i}.png")
        for i in range(1, count + 1)
    ]


def _setup(count: int, responses: dict[int, object] | None = None, delay: float = 0.02):
    submissions = _submissions(count)
    store = FakeStore(submissions)
    blobs = {(1, "solution.png"): SOLUTION}
    grader_responses: dict[bytes, object] = {}
    for submission in submissions:
        image = f"image-{submission.id}".encode()
        blobs[(1, submission.image_file)] = image
        grader_responses[image] = (responses or {}).get(submission.id, _ok_response())
    return store, FakeImages(blobs), FakeGrader(grader_responses, delay=delay)


def _collect(dispatcher: BatchDispatcher, assignment_id: int = 1) -> list[StreamEvent]:
    async def _run() -> list[StreamEvent]:
        return [event async for event in dispatcher.run(assignment_id)]

    return asyncio.run(_run())


def test_batch_emits_one_progress_per_submission_then_done() -> None:
    store, images, grader = _setup(4)
    dispatcher = BatchDispatcher(store, images, grader)

    events = _collect(dispatcher)

    assert [e.name for e in events] == ["progress"] * 4 + ["done"]
    assert {e.payload["id"] for e in events[:-1]} == {1, 2, 3, 4}
    assert all(e.payload["status"] == "done" and e.payload["grade"] == 12 for e in events[:-1])
    assert events[-1].payload == {}
    assert sorted(store.updated) == [1, 2, 3, 4]
    assert dispatcher.state is DispatchState.COMPLETED


def test_empty_batch_emits_single_done_without_oracle_calls() -> None:
    store, images, grader = _setup(0)

    events = _collect(BatchDispatcher(store, images, grader))

    assert events == [StreamEvent("done", {"message": "No ungraded submissions"})]
    assert grader.calls == 0


@pytest.mark.parametrize(
    ("has_assignment", "rubric_missing", "message"),
    [(False, False, "Assignment not found"), (True, True, "Rubric not found")],
)
def test_missing_assignment_or_rubric_emits_single_error(has_assignment: bool, rubric_missing: bool, message: str) -> None:
    store, images, grader = _setup(2)
    store.has_assignment = has_assignment
    if rubric_missing:
        store.rubric = None

    events = _collect(BatchDispatcher(store, images, grader))

    assert events == [StreamEvent("error", {"error": message})]
    assert grader.calls == 0


def test_load_failure_emits_error_event() -> None:
    store, images, grader = _setup(2)
    store.list_error = RuntimeError("database unavailable")

    events = _collect(BatchDispatcher(store, images, grader))

    assert len(events) == 1
    assert events[0].name == "error"
    assert "database unavailable" in events[0].payload["error"]
    assert grader.calls == 0


@pytest.mark.parametrize(("count", "concurrency"), [(7, 2), (5, 1), (3, 2)])
def test_oracle_calls_never_exceed_concurrency(count: int, concurrency: int) -> None:
    store, images, grader = _setup(count, delay=0.05)
    dispatcher = BatchDispatcher(store, images, grader, concurrency=concurrency)

    events = _collect(dispatcher)

    assert len(events) == count + 1
    assert grader.calls == count
    assert grader.max_in_flight == concurrency
    assert dispatcher.max_in_flight == concurrency


def test_unknown_criterion_fails_only_that_item() -> None:
    bad = json.dumps({"criterionScores": [{"id": "c7", "earned": 1, "comment": "?"}], "total": 1, "overall": "?"})
    store, images, grader = _setup(3, responses={3: bad})

    events = _collect(BatchDispatcher(store, images, grader))

    progress = {e.payload["id"]: e.payload for e in events if e.name == "progress"}
    assert [e.name for e in events][-1] == "done"
    assert len(progress) == 3
    assert progress[1]["status"] == "done" and progress[1]["grade"] == 12
    assert progress[2]["status"] == "done" and progress[2]["grade"] == 12
    assert progress[3]["status"] == "error"
    assert progress[3]["kind"] == "oracle"
    assert "c7" in progress[3]["error"]
    assert store.submissions[3].ai_graded is False
    assert store.submissions[3].grade is None


def test_total_mismatch_keeps_reported_total_and_signals_warning() -> None:
    store, images, grader = _setup(1, responses={1: _ok_response(c1=8, c2=4, total=14)})

    events = _collect(BatchDispatcher(store, images, grader))

    assert events[0].payload["status"] == "done"
    assert events[0].payload["grade"] == 14
    assert events[0].payload["warnings"]
    assert store.submissions[1].grade == 14


def test_unexpected_exception_is_isolated_to_its_item() -> None:
    store, images, grader = _setup(3, responses={2: KeyError("boom")})

    events = _collect(BatchDispatcher(store, images, grader))

    progress = {e.payload["id"]: e.payload for e in events if e.name == "progress"}
    assert progress[2]["status"] == "error"
    assert progress[2]["kind"] == "internal"
    assert "KeyError" in progress[2]["error"]
    assert progress[1]["status"] == progress[3]["status"] == "done"
    assert events[-1].name == "done"


def test_missing_image_and_persistence_failure_are_per_item() -> None:
    store, images, grader = _setup(3)
    del images.blobs[(1, "sub1.png")]
    store.fail_updates.add(2)

    events = _collect(BatchDispatcher(store, images, grader))

    progress = {e.payload["id"]: e.payload for e in events if e.name == "progress"}
    assert progress[1]["kind"] == "not_found"
    assert progress[2]["kind"] == "persistence"
    assert progress[3]["status"] == "done"
    assert store.submissions[1].ai_graded is False
    assert store.submissions[2].ai_graded is False
    assert grader.calls == 2


def test_rerun_only_admits_ungraded_submissions() -> None:
    bad = json.dumps({"criterionScores": [{"id": "nope", "earned": 0, "comment": ""}], "total": 0, "overall": ""})
    store, images, grader = _setup(3, responses={2: bad})
    _collect(BatchDispatcher(store, images, grader))
    graded_before = {sid: store.submissions[sid].grade for sid in (1, 3)}

    grader.responses[b"image-2"] = _ok_response(c1=1, c2=1)
    events = _collect(BatchDispatcher(store, images, grader))

    assert [e.name for e in events] == ["progress", "done"]
    assert events[0].payload == {"id": 2, "status": "done", "grade": 2}
    assert {sid: store.submissions[sid].grade for sid in (1, 3)} == graded_before
    assert grader.calls == 4


def test_dispatcher_rejects_non_positive_concurrency() -> None:
    store, images, grader = _setup(1)
    with pytest.raises(ValueError):
        BatchDispatcher(store, images, grader, concurrency=0)


def test_completion_counter_fires_exactly_once_under_contention() -> None:
    counter = CompletionCounter(200)
    fired: list[bool] = []
    lock = threading.Lock()

    def _worker() -> None:
        for _ in range(25):
            result = counter.record()
            with lock:
                fired.append(result)

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert counter.completed == 200
    assert fired.count(True) == 1
    with pytest.raises(RuntimeError):
        counter.record()
