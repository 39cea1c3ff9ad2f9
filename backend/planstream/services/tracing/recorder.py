"""Per-run execution trace.

Events are sanitized on the way in: any mapping key containing one of the
denylisted fragments (case-insensitive) has its value replaced, at any depth.
Each trace keeps at most ``max_events`` events. The last slot is held back for
the ``pipeline_end`` event so a completed trace always records its outcome.
"""

import copy
import threading
import time
import traceback
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from planstream.logging import get_logger
from planstream.services.tracing.store import TraceStore

logger = get_logger(__name__)

PIPELINE_START = "pipeline_start"
PIPELINE_END = "pipeline_end"
STAGE_START = "stage_start"
STAGE_END = "stage_end"
LLM_REQUEST = "llm_request"
LLM_RESPONSE = "llm_response"
CACHE = "cache"
VALIDATION = "validation"
ERROR = "error"
WARNING = "warning"
DEBUG = "debug"

EVENT_TYPES = (
    PIPELINE_START,
    PIPELINE_END,
    STAGE_START,
    STAGE_END,
    LLM_REQUEST,
    LLM_RESPONSE,
    CACHE,
    VALIDATION,
    ERROR,
    WARNING,
    DEBUG,
)

SENSITIVE_FIELDS = ("apikey", "api_key", "password", "token", "secret", "authorization")
REDACTED = "[REDACTED]"

STATUS_ACTIVE = "active"


def _is_sensitive(key: Any) -> bool:
    lowered = str(key).lower()
    return any(fragment in lowered for fragment in SENSITIVE_FIELDS)


def sanitize(value: Any) -> Any:
    """Deep copy of ``value`` with sensitive keys redacted."""
    if isinstance(value, dict):
        return {k: (REDACTED if _is_sensitive(k) else sanitize(v)) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize(v) for v in value]
    return value


def _iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


def summarize(trace: dict) -> dict:
    return {
        "traceId": trace["traceId"],
        "createdAt": trace["createdAt"],
        "completedAt": trace.get("completedAt"),
        "status": trace["status"],
        "summary": copy.deepcopy(trace["summary"]),
    }


class TraceRecorder:
    def __init__(
        self,
        store: TraceStore,
        max_events: int = 500,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.max_events = max(2, max_events)
        self._clock = clock
        self._lock = threading.RLock()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def create(self, trace_id: str, metadata: Optional[dict] = None) -> dict:
        now = self._now_ms()
        trace = {
            "traceId": trace_id,
            "createdAt": _iso(now),
            "createdAtMs": now,
            "updatedAt": _iso(now),
            "status": STATUS_ACTIVE,
            "metadata": sanitize(metadata or {}),
            "events": [],
            "summary": {
                "stageCount": 0,
                "errorCount": 0,
                "warningCount": 0,
                "droppedEvents": 0,
                "totalDuration": None,
            },
        }
        with self._lock:
            self.store.save(trace)
        self.add_event(trace_id, PIPELINE_START, {"metadata": metadata or {}})
        return copy.deepcopy(trace)

    def add_event(self, trace_id: str, event_type: str, data: Optional[dict] = None) -> bool:
        with self._lock:
            trace = self.store.get(trace_id)
            if trace is None:
                logger.warning("trace.not_found trace=%s event=%s", trace_id, event_type)
                return False
            # One slot stays free for pipeline_end.
            limit = self.max_events if event_type == PIPELINE_END else self.max_events - 1
            if len(trace["events"]) >= limit:
                summary = trace["summary"]
                if summary["droppedEvents"] == 0:
                    logger.warning(
                        "trace.event_cap_reached trace=%s max_events=%s", trace_id, self.max_events
                    )
                summary["droppedEvents"] += 1
                self.store.save(trace)
                return False
            now = self._now_ms()
            trace["events"].append(
                {
                    "id": len(trace["events"]),
                    "type": event_type,
                    "timestamp": _iso(now),
                    "timestampMs": now,
                    "data": sanitize(data or {}),
                }
            )
            trace["updatedAt"] = _iso(now)
            summary = trace["summary"]
            if event_type == STAGE_START:
                summary["stageCount"] += 1
            elif event_type == ERROR:
                summary["errorCount"] += 1
            elif event_type == WARNING:
                summary["warningCount"] += 1
            self.store.save(trace)
            return True

    def stage_start(self, trace_id: str, stage: str, input_data: Optional[dict] = None) -> bool:
        return self.add_event(trace_id, STAGE_START, {"stage": stage, "input": input_data})

    def stage_end(
        self,
        trace_id: str,
        stage: str,
        result: Optional[dict] = None,
        duration_ms: Optional[int] = None,
    ) -> bool:
        return self.add_event(trace_id, STAGE_END, {"stage": stage, "result": result, "durationMs": duration_ms})

    def error(self, trace_id: str, stage: str, exc: BaseException) -> bool:
        stack = traceback.format_exception(type(exc), exc, exc.__traceback__)
        return self.add_event(
            trace_id,
            ERROR,
            {
                "stage": stage,
                "message": str(exc),
                "name": type(exc).__name__,
                "code": getattr(exc, "code", None),
                "stack": "".join(stack).splitlines()[:5],
            },
        )

    def warning(self, trace_id: str, stage: str, message: str, **context: Any) -> bool:
        return self.add_event(trace_id, WARNING, {"stage": stage, "message": message, **context})

    def debug(self, trace_id: str, label: str, data: Optional[dict] = None) -> bool:
        return self.add_event(trace_id, DEBUG, {"label": label, **(data or {})})

    def complete(self, trace_id: str, status: str, result: Optional[dict] = None) -> Optional[dict]:
        result = result or {}
        with self._lock:
            if self.store.get(trace_id) is None:
                logger.warning("trace.complete_not_found trace=%s", trace_id)
                return None
            self.add_event(trace_id, PIPELINE_END, {"status": status, "result": result})
            trace = self.store.get(trace_id)
            now = self._now_ms()
            trace["status"] = status
            trace["completedAt"] = _iso(now)
            summary = trace["summary"]
            if trace["events"]:
                summary["totalDuration"] = now - trace["events"][0]["timestampMs"]
            summary["finalStatus"] = status
            summary["eventCount"] = len(trace["events"])
            for key in ("dayTotals", "targets", "stats"):
                if key in result:
                    summary[key] = sanitize(result[key])
            self.store.save(trace)
            logger.info(
                "trace.completed trace=%s status=%s events=%s duration_ms=%s",
                trace_id,
                status,
                summary["eventCount"],
                summary["totalDuration"],
            )
            return copy.deepcopy(trace)

    def get(self, trace_id: str) -> Optional[dict]:
        with self._lock:
            trace = self.store.get(trace_id)
            return copy.deepcopy(trace) if trace is not None else None

    def summary(self, trace_id: str) -> Optional[dict]:
        with self._lock:
            trace = self.store.get(trace_id)
            return summarize(trace) if trace is not None else None

    def list_recent(self, limit: int = 20, offset: int = 0, status: Optional[str] = None) -> list[dict]:
        with self._lock:
            traces = self.store.all()
            if status:
                traces = [t for t in traces if t["status"] == status]
            traces.sort(key=lambda t: t["createdAtMs"], reverse=True)
            return [summarize(t) for t in traces[offset : offset + limit]]

    def delete(self, trace_id: str) -> bool:
        with self._lock:
            return self.store.delete(trace_id)

    def clear(self) -> None:
        with self._lock:
            self.store.clear()

    def stats(self) -> dict:
        with self._lock:
            traces = self.store.all()
            by_status: dict[str, int] = {}
            for t in traces:
                by_status[t["status"]] = by_status.get(t["status"], 0) + 1
            durations = [t["summary"]["totalDuration"] for t in traces if t["summary"]["totalDuration"] is not None]
            return {
                "totalTraces": len(traces),
                "byStatus": by_status,
                "averageDuration": (sum(durations) / len(durations)) if durations else 0,
                "totalEvents": sum(len(t["events"]) for t in traces),
            }
