"""Server-sent event stream for one plan run.

Each event is written as::

    event: <type>
    data: <json payload>
    <blank line>

The payload always carries ``traceId``, ``timestamp`` and ``eventType``.
Exactly one terminal event (``plan:complete`` or ``plan:error``) is sent per
stream; ``close()`` synthesizes a ``STREAM_TERMINATED`` error if nothing
terminal was sent. Writes are serialized, so days may report from worker threads.
"""

import json
import queue
import threading
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from planstream.errors import STREAM_TERMINATED, UNKNOWN_ERROR
from planstream.logging import get_logger

logger = get_logger(__name__)

PHASE_START = "phase:start"
PHASE_END = "phase:end"
PHASE_ERROR = "phase:error"
DAY_START = "day:start"
DAY_COMPLETE = "day:complete"
DAY_ERROR = "day:error"
INGREDIENT_FOUND = "ingredient:found"
INGREDIENT_FAILED = "ingredient:failed"
INGREDIENT_FLAGGED = "ingredient:flagged"
INVARIANT_WARNING = "invariant:warning"
INVARIANT_VIOLATION = "invariant:violation"
VALIDATION_WARNING = "validation:warning"
VALIDATION_FAILED = "validation:failed"
LOG_MESSAGE = "log_message"
PLAN_COMPLETE = "plan:complete"
PLAN_ERROR = "plan:error"

TERMINAL_EVENTS = frozenset({PLAN_COMPLETE, PLAN_ERROR})
EVENT_TYPES = (
    PHASE_START,
    PHASE_END,
    PHASE_ERROR,
    DAY_START,
    DAY_COMPLETE,
    DAY_ERROR,
    INGREDIENT_FOUND,
    INGREDIENT_FAILED,
    INGREDIENT_FLAGGED,
    INVARIANT_WARNING,
    INVARIANT_VIOLATION,
    VALIDATION_WARNING,
    VALIDATION_FAILED,
    LOG_MESSAGE,
    PLAN_COMPLETE,
    PLAN_ERROR,
)

DEFAULT_INVARIANT_ID = "INV-001"


class StreamClosedError(Exception):
    """Raised by a sink once the client has gone away."""


class StreamSink(Protocol):
    def write(self, frame: str) -> None: ...

    def close(self) -> None: ...


def format_sse(event: str, payload: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(payload, default=str)}\n\n"


def parse_sse(text: str) -> list[tuple[str, dict]]:
    """Split a raw event-stream body back into ``(event, payload)`` pairs."""
    events = []
    for block in text.split("\n\n"):
        event, data = None, []
        for line in block.splitlines():
            if line.startswith("event:"):
                event = line[len("event:"):].strip()
            elif line.startswith("data:"):
                data.append(line[len("data:"):].strip())
        if event is None:
            continue
        events.append((event, json.loads("\n".join(data)) if data else {}))
    return events


class QueueSink:
    """Hands frames from the worker thread to the async response generator."""

    _DONE = object()

    def __init__(self) -> None:
        self._queue: queue.Queue = queue.Queue()
        self._disconnected = threading.Event()

    def write(self, frame: str) -> None:
        if self._disconnected.is_set():
            raise StreamClosedError("client disconnected")
        self._queue.put_nowait(frame)

    def close(self) -> None:
        self._queue.put_nowait(self._DONE)

    def disconnect(self) -> None:
        self._disconnected.set()

    @property
    def disconnected(self) -> bool:
        return self._disconnected.is_set()

    def get_nowait(self) -> Optional[str]:
        """Next frame, ``None`` once closed. Raises ``queue.Empty`` when idle."""
        item = self._queue.get_nowait()
        return None if item is self._DONE else item


class ListSink:
    def __init__(self) -> None:
        self.frames: list[str] = []
        self.closed = False

    def write(self, frame: str) -> None:
        if self.closed:
            raise StreamClosedError("sink closed")
        self.frames.append(frame)

    def close(self) -> None:
        self.closed = True

    @property
    def body(self) -> str:
        return "".join(self.frames)

    def events(self) -> list[tuple[str, dict]]:
        return parse_sse(self.body)

    def names(self) -> list[str]:
        return [name for name, _ in self.events()]


class StreamEmitter:
    def __init__(self, sink: StreamSink, trace_id: str) -> None:
        self.sink = sink
        self.trace_id = trace_id
        self._lock = threading.RLock()
        self._terminal_sent = False
        self._closed = False
        self._client_gone = False

    def __enter__(self) -> "StreamEmitter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def terminated(self) -> bool:
        return self._terminal_sent

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, event_type: str, data: Optional[dict] = None) -> bool:
        with self._lock:
            if self._closed:
                logger.warning("sse.send_after_close event=%s trace=%s", event_type, self.trace_id)
                return False
            if self._client_gone:
                return False
            payload = {
                **(data or {}),
                "traceId": self.trace_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "eventType": event_type,
            }
            try:
                self.sink.write(format_sse(event_type, payload))
            except (StreamClosedError, OSError) as exc:
                self._client_gone = True
                logger.info("sse.client_gone event=%s trace=%s error=%s", event_type, self.trace_id, exc)
                return False
            return True

    def log_message(self, level: str, tag: str, message: str, **extra: Any) -> None:
        self.send(LOG_MESSAGE, {"level": level, "tag": tag, "message": message, **extra})

    def phase_start(self, name: str, description: str = "") -> None:
        self.send(PHASE_START, {"name": name, "description": description})

    def phase_end(self, name: str, result: Optional[dict] = None) -> None:
        self.send(PHASE_END, {"name": name, "result": result or {}})

    def phase_error(self, name: str, code: str, message: str) -> None:
        self.send(PHASE_ERROR, {"name": name, "code": code, "message": message})

    def day_start(self, day_number: int, total_days: int) -> None:
        self.send(
            DAY_START,
            {
                "dayNumber": day_number,
                "totalDays": total_days,
                "description": f"Processing Day {day_number} of {total_days}",
            },
        )

    def day_complete(self, day_number: int, data: dict, source: Optional[str] = None) -> None:
        payload = {"dayNumber": day_number, "data": data}
        if source:
            payload["source"] = source
        self.send(DAY_COMPLETE, payload)

    def day_error(self, day_number: int, code: str, message: str, recoverable: bool = False) -> None:
        self.send(DAY_ERROR, {"dayNumber": day_number, "code": code, "message": message, "recoverable": recoverable})

    def ingredient_found(self, key: str, data: Optional[dict] = None) -> None:
        self.send(INGREDIENT_FOUND, {"key": key, "data": data or {}})

    def ingredient_failed(self, key: str, reason: str) -> None:
        self.send(INGREDIENT_FAILED, {"key": key, "reason": reason})

    def ingredient_flagged(self, key: str, violation: Optional[dict] = None) -> None:
        self.send(
            INGREDIENT_FLAGGED,
            {"key": key, "invariantId": DEFAULT_INVARIANT_ID, "severity": "WARNING", **(violation or {})},
        )

    def invariant_warning(self, invariant_id: str, details: Optional[dict] = None) -> None:
        self.send(INVARIANT_WARNING, {"invariantId": invariant_id, "severity": "WARNING", **(details or {})})

    def invariant_violation(self, invariant_id: str, details: Optional[dict] = None) -> None:
        self.send(INVARIANT_VIOLATION, {"invariantId": invariant_id, "severity": "CRITICAL", **(details or {})})

    def validation_warning(self, warnings: list) -> None:
        self.send(VALIDATION_WARNING, {"severity": "WARNING", "count": len(warnings), "warnings": warnings})

    def validation_failed(self, issues: list) -> None:
        self.send(VALIDATION_FAILED, {"severity": "CRITICAL", "count": len(issues), "issues": issues})

    def complete(self, payload: dict) -> bool:
        with self._lock:
            if self._terminal_sent:
                logger.warning("sse.terminal_already_sent ignored=%s trace=%s", PLAN_COMPLETE, self.trace_id)
                return False
            self._terminal_sent = True
            self.send(PLAN_COMPLETE, payload)
            self.close()
            return True

    def error(self, code: str, message: str, **context: Any) -> bool:
        with self._lock:
            if self._terminal_sent:
                logger.warning("sse.terminal_already_sent ignored=%s code=%s trace=%s", PLAN_ERROR, code, self.trace_id)
                return False
            self._terminal_sent = True
            self.send(
                PLAN_ERROR,
                {
                    "code": code or UNKNOWN_ERROR,
                    "message": message or "An unknown error occurred",
                    "recoverable": False,
                    **context,
                },
            )
            self.close()
            return True

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            if not self._terminal_sent:
                logger.error("sse.closed_without_terminal trace=%s", self.trace_id)
                self._terminal_sent = True
                self.send(
                    PLAN_ERROR,
                    {
                        "code": STREAM_TERMINATED,
                        "message": "Stream terminated without explicit completion",
                        "recoverable": False,
                    },
                )
            self._closed = True
            try:
                self.sink.close()
            except Exception as exc:  # noqa: BLE001 - closing a dead connection
                logger.warning("sse.close_failed trace=%s error=%s", self.trace_id, exc)
