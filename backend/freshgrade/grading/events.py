"""Server-sent event encoding for batch grading progress."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any

from freshgrade.grading.base import ItemOutcome

logger = logging.getLogger(__name__)

PROGRESS = "progress"
DONE = "done"
ERROR = "error"

TERMINAL_EVENTS = frozenset({DONE, ERROR})

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@dataclass(frozen=True)
class StreamEvent:
    name: str
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.name in TERMINAL_EVENTS


def progress_event(outcome: ItemOutcome) -> StreamEvent:
    if outcome.ok:
        payload: dict[str, Any] = {"id": outcome.submission_id, "status": "done", "grade": outcome.grade}
        if outcome.warnings:
            payload["warnings"] = list(outcome.warnings)
        return StreamEvent(PROGRESS, payload)

    error = outcome.error
    payload = {"id": outcome.submission_id, "status": "error", "error": str(error)}
    if error is not None:
        payload["kind"] = error.kind.value
    return StreamEvent(PROGRESS, payload)


def done_event(message: str | None = None) -> StreamEvent:
    return StreamEvent(DONE, {"message": message} if message else {})


def error_event(message: str) -> StreamEvent:
    return StreamEvent(ERROR, {"error": message})


def encode_event(event: StreamEvent) -> str:
    data = json.dumps(event.payload, separators=(",", ":"))
    return f"event: {event.name}\ndata: {data}\n\n"


async def encode_stream(events: AsyncGenerator[StreamEvent, None]) -> AsyncIterator[str]:
    """Encode events until the first terminal one, which is always written last.

    A producer that fails or stops early is closed with ``error`` while no
    item has been reported, and with ``done`` carrying a message once any
    ``progress`` event went out.
    """
    progressed = False
    try:
        async with aclosing(events):
            async for event in events:
                yield encode_event(event)
                if event.terminal:
                    return
                progressed = progressed or event.name == PROGRESS
    except Exception as exc:
        logger.exception("grade/stream producer failed", extra={"stage": "stream", "progressed": progressed})
        message = f"Batch grading failed: {type(exc).__name__}: {str(exc)[:300]}"
    else:
        logger.error("grade/stream ended without terminal event", extra={"stage": "stream", "progressed": progressed})
        message = "Batch grading stream ended unexpectedly"

    yield encode_event(done_event(message) if progressed else error_event(message))
