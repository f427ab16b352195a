"""Bounded-concurrency batch grading dispatcher."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from collections.abc import AsyncGenerator
from enum import Enum

from freshgrade.ai.openai_vision import VisionGrader
from freshgrade.errors import GradingError, NotFoundError
from freshgrade.grading.base import GradingContext, ItemOutcome, RecordStore, load_grading_context
from freshgrade.grading.events import StreamEvent, done_event, error_event, progress_event
from freshgrade.grading.single import grade_submission
from freshgrade.models import Submission
from freshgrade.storage_provider import StorageProvider

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 2
NOTHING_TO_GRADE = "No ungraded submissions"


class DispatchState(str, Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    DRAINING = "draining"
    COMPLETED = "completed"


class CompletionCounter:
    """Counts finished items and reports the single completion that ends the batch."""

    def __init__(self, total: int) -> None:
        if total < 1:
            raise ValueError("total must be positive")
        self.total = total
        self._completed = 0
        self._lock = threading.Lock()

    @property
    def completed(self) -> int:
        with self._lock:
            return self._completed

    def record(self) -> bool:
        """Increment and return True only for the completion that reaches ``total``."""
        with self._lock:
            if self._completed >= self.total:
                raise RuntimeError("more completions recorded than items admitted")
            self._completed += 1
            return self._completed == self.total


class BatchDispatcher:
    """Grades every ungraded submission of one assignment, one instance per request.

    ``run`` yields one ``progress`` event per finished item in completion order,
    followed by exactly one terminal ``done`` or ``error`` event.
    """

    def __init__(
        self,
        store: RecordStore,
        images: StorageProvider,
        grader: VisionGrader,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.store = store
        self.images = images
        self.grader = grader
        self.concurrency = concurrency
        self.batch_id = uuid.uuid4().hex
        self.state = DispatchState.INITIALIZING
        self.in_flight = 0
        self.max_in_flight = 0
        self._admitted = 0
        self._tasks: set[asyncio.Task[None]] = set()

    async def run(self, assignment_id: int) -> AsyncGenerator[StreamEvent, None]:
        log_extra = {"batch_id": self.batch_id, "assignment_id": assignment_id}
        started = time.perf_counter()

        try:
            context = await asyncio.to_thread(load_grading_context, self.store, assignment_id)
            pending = await asyncio.to_thread(self.store.list_ungraded_submissions, assignment_id)
        except NotFoundError as exc:
            self.state = DispatchState.COMPLETED
            logger.info("grade/batch aborted", extra={**log_extra, "stage": "initializing", "error": str(exc)})
            yield error_event(str(exc))
            return
        except Exception as exc:
            self.state = DispatchState.COMPLETED
            logger.exception("grade/batch failed to load", extra={**log_extra, "stage": "initializing"})
            yield error_event(f"Failed to load submissions: {exc}")
            return

        if not pending:
            self.state = DispatchState.COMPLETED
            logger.info("grade/batch nothing to do", extra={**log_extra, "stage": "initializing"})
            yield done_event(NOTHING_TO_GRADE)
            return

        total = len(pending)
        queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        gate = asyncio.Semaphore(self.concurrency)
        counter = CompletionCounter(total)

        self.state = DispatchState.RUNNING
        logger.info(
            "grade/batch started",
            extra={**log_extra, "stage": "running", "submissions": total, "concurrency": self.concurrency},
        )
        for submission in pending:
            task = asyncio.create_task(self._run_item(submission, context, gate, counter, queue))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        while True:
            event = await queue.get()
            yield event
            if event.terminal:
                break

        logger.info(
            "grade/batch completed",
            extra={**log_extra, "stage": "completed", "submissions": total, "batch_ms": int((time.perf_counter() - started) * 1000)},
        )

    async def _run_item(
        self,
        submission: Submission,
        context: GradingContext,
        gate: asyncio.Semaphore,
        counter: CompletionCounter,
        queue: asyncio.Queue[StreamEvent],
    ) -> None:
        try:
            async with gate:
                self._admitted += 1
                if self._admitted == counter.total:
                    self.state = DispatchState.DRAINING
                self.in_flight += 1
                self.max_in_flight = max(self.max_in_flight, self.in_flight)
                try:
                    outcome = await grade_submission(
                        submission,
                        context,
                        store=self.store,
                        images=self.images,
                        grader=self.grader,
                    )
                finally:
                    self.in_flight -= 1
        except Exception as exc:
            logger.exception(
                "grade/item crashed",
                extra={"batch_id": self.batch_id, "assignment_id": context.assignment_id, "submission_id": submission.id},
            )
            outcome = ItemOutcome.failed(submission.id, GradingError(f"Unexpected error: {type(exc).__name__}: {exc}"))

        queue.put_nowait(progress_event(outcome))
        if counter.record():
            self.state = DispatchState.COMPLETED
            queue.put_nowait(done_event())
