"""Threshold alerts with per-metric rate limiting and async notification hooks.

Non-critical alerts for one metric are capped at ``max_per_window`` inside a
sliding window of ``window_s`` seconds. Critical alerts always go out and do
not count against the window. Each registered hook gets its own worker thread
and bounded queue, so a slow or failing hook never affects the caller or the
other hooks.
"""

import json
import queue
import threading
import time
import traceback
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import httpx

from planstream.logging import get_logger

logger = get_logger(__name__)

CRITICAL = "critical"
WARNING = "warning"
INFO = "info"

NUTRITION = "nutrition"
STATE_RESOLUTION = "state_resolution"
VALIDATION = "validation"
RECONCILIATION = "reconciliation"
MARKET_RUN = "market_run"
MODEL = "model"
SYSTEM = "system"
INVARIANTS = "invariants"
INGESTION = "ingestion"

ALERT_THRESHOLDS: dict[str, dict[str, float]] = {
    "fallback_rate": {"critical": 30, "warning": 15},
    "low_confidence_rate": {"warning": 20},
    "llm_validation_failure_rate": {"warning": 10},
    "reconciliation_factor": {"critical_high": 2.0, "critical_low": 0.5, "warning_high": 1.5, "warning_low": 0.7},
    "calorie_deviation": {"critical": 15, "warning": 10},
    "protein_deviation": {"critical": 20, "warning": 15},
    # Success/hit rates: lower is worse.
    "market_run_success_rate": {"warning_low": 80},
    "hotpath_hit_rate": {"warning_low": 70},
    "validation_critical_count": {"critical": 0},
    "macro_kcal_deviation": {"critical": 20, "warning": 5},
    "flagged_items_rate": {"critical": 20},
    "day_failure_rate": {"critical": 50, "warning": 0},
}

METRIC_TO_CATEGORY = {
    "fallback_rate": NUTRITION,
    "high_fallback_rate": NUTRITION,
    "hotpath_hit_rate": NUTRITION,
    "hotpath_miss": NUTRITION,
    "nutrition_fallback": NUTRITION,
    "calorie_deviation": NUTRITION,
    "protein_deviation": NUTRITION,
    "low_confidence_rate": STATE_RESOLUTION,
    "low_confidence_resolution": STATE_RESOLUTION,
    "validation_critical": VALIDATION,
    "validation_warning": VALIDATION,
    "validation_critical_count": VALIDATION,
    "reconciliation_factor": RECONCILIATION,
    "reconciliation_clamped": RECONCILIATION,
    "market_run_failure": MARKET_RUN,
    "market_run_success_rate": MARKET_RUN,
    "llm_validation_failure_rate": MODEL,
    "llm_validation_failed": MODEL,
    "llm_retry_exhausted": MODEL,
    "llm_fallback_failed": MODEL,
    "system_error": SYSTEM,
    "pipeline_failure": SYSTEM,
    "day_failure_rate": SYSTEM,
    "macro_kcal_deviation": INVARIANTS,
    "flagged_items_rate": INVARIANTS,
    "item_flagged_inv001": INVARIANTS,
    "invariant_violation": INVARIANTS,
    "ingestion_rejected": INGESTION,
}

_CHECK_ORDER = (
    ("critical", CRITICAL, "above"),
    ("warning", WARNING, "above"),
    ("critical_high", CRITICAL, "above"),
    ("critical_low", CRITICAL, "below"),
    ("warning_high", WARNING, "above"),
    ("warning_low", WARNING, "below"),
)

_LOG_LEVEL = {CRITICAL: "error", WARNING: "warning", INFO: "info"}


class _HookWorker:
    def __init__(self, name: str, fn: Callable[[dict], Any], queue_size: int) -> None:
        self.name = name
        self.fn = fn
        self.queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self.thread = threading.Thread(target=self._run, name=f"alert-hook-{name}", daemon=True)
        self.thread.start()

    def _run(self) -> None:
        while True:
            alert = self.queue.get()
            try:
                if alert is None:
                    return
                self.fn(alert)
            except Exception as exc:  # noqa: BLE001 - hook failures stay inside the hook
                logger.error("alert.hook_failed hook=%s alert=%s error=%s", self.name, alert.get("id"), exc)
            finally:
                self.queue.task_done()

    def offer(self, alert: dict) -> bool:
        try:
            self.queue.put_nowait(alert)
            return True
        except queue.Full:
            logger.warning("alert.hook_queue_full hook=%s alert=%s dropped", self.name, alert.get("id"))
            return False

    def stop(self, timeout: float) -> None:
        try:
            self.queue.put(None, timeout=timeout)
        except queue.Full:
            logger.warning("alert.hook_stop_timeout hook=%s", self.name)
            return
        self.thread.join(timeout=timeout)


class AlertEngine:
    def __init__(
        self,
        *,
        window_s: float = 60.0,
        max_per_window: int = 5,
        buffer_size: int = 200,
        hook_queue_size: int = 100,
        thresholds: Optional[dict] = None,
        clock: Callable[[], float] = time.monotonic,
        source: str = "planstream",
    ) -> None:
        self.window_s = window_s
        self.max_per_window = max_per_window
        self.hook_queue_size = hook_queue_size
        self.thresholds = thresholds if thresholds is not None else ALERT_THRESHOLDS
        self.source = source
        self._clock = clock
        self._windows: dict[str, deque] = {}
        self._suppressed: dict[str, int] = {}
        self._recent: deque = deque(maxlen=buffer_size)
        self._hooks: dict[str, _HookWorker] = {}
        self._lock = threading.Lock()

    # rate limiting

    def _allow(self, metric: str) -> bool:
        now = self._clock()
        window = self._windows.setdefault(metric, deque())
        while window and window[0] <= now - self.window_s:
            window.popleft()
        if len(window) >= self.max_per_window:
            self._suppressed[metric] = self._suppressed.get(metric, 0) + 1
            return False
        window.append(now)
        return True

    def configure_rate_limiting(
        self, window_s: Optional[float] = None, max_per_window: Optional[int] = None
    ) -> None:
        with self._lock:
            if window_s is not None:
                self.window_s = window_s
            if max_per_window is not None:
                self.max_per_window = max_per_window

    def clear_rate_limits(self) -> None:
        with self._lock:
            self._windows.clear()
            self._suppressed.clear()

    def rate_limit_stats(self) -> dict:
        with self._lock:
            now = self._clock()
            return {
                "windowS": self.window_s,
                "maxPerWindow": self.max_per_window,
                "metrics": {
                    metric: {
                        "inWindow": sum(1 for ts in window if ts > now - self.window_s),
                        "suppressed": self._suppressed.get(metric, 0),
                    }
                    for metric, window in self._windows.items()
                },
            }

    # hooks

    def register_hook(self, fn: Callable[[dict], Any], name: Optional[str] = None) -> str:
        name = name or getattr(fn, "__name__", None) or f"hook-{uuid.uuid4().hex[:8]}"
        with self._lock:
            if name in self._hooks:
                raise ValueError(f"alert hook already registered: {name}")
            self._hooks[name] = _HookWorker(name, fn, self.hook_queue_size)
        logger.info("alert.hook_registered hook=%s", name)
        return name

    def unregister_hook(self, name: str, timeout: float = 1.0) -> bool:
        with self._lock:
            worker = self._hooks.pop(name, None)
        if worker is None:
            return False
        worker.stop(timeout)
        return True

    def flush(self, timeout: float = 2.0) -> bool:
        """Wait until every hook has processed what is queued. False on timeout."""
        deadline = time.monotonic() + timeout
        with self._lock:
            workers = list(self._hooks.values())
        for worker in workers:
            while worker.queue.unfinished_tasks:
                if time.monotonic() >= deadline:
                    return False
                time.sleep(0.005)
        return True

    def shutdown(self, timeout: float = 1.0) -> None:
        with self._lock:
            workers = list(self._hooks.values())
            self._hooks.clear()
        for worker in workers:
            worker.stop(timeout)

    # emission

    def emit(self, level: str, metric: str, context: Optional[dict] = None, trace_id: Optional[str] = None) -> Optional[dict]:
        with self._lock:
            if level != CRITICAL and not self._allow(metric):
                logger.debug("alert.rate_limited metric=%s level=%s", metric, level)
                return None
            alert = {
                "id": f"alert_{uuid.uuid4().hex[:12]}",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "level": level,
                "metric": metric,
                "category": METRIC_TO_CATEGORY.get(metric, SYSTEM),
                "context": dict(context or {}),
                "traceId": trace_id,
                "source": self.source,
                "version": "1.0",
            }
            self._recent.append(alert)
            workers = list(self._hooks.values())

        line = json.dumps({"type": "ALERT", **alert}, default=str)
        getattr(logger, _LOG_LEVEL.get(level, "info"))(line)
        for worker in workers:
            worker.offer(alert)
        return alert

    def check_threshold(
        self, metric: str, value: float, context: Optional[dict] = None, trace_id: Optional[str] = None
    ) -> Optional[dict]:
        """Evaluate ``value`` against the metric's thresholds; critical before warning."""
        bounds = self.thresholds.get(metric)
        if not bounds:
            return None
        for key, level, direction in _CHECK_ORDER:
            threshold = bounds.get(key)
            if threshold is None:
                continue
            breached = value > threshold if direction == "above" else value < threshold
            if breached:
                return self.emit(
                    level,
                    metric,
                    {**(context or {}), "value": value, "threshold": threshold, "thresholdType": key},
                    trace_id=trace_id,
                )
        return None

    def recent(self, limit: int = 50, level: Optional[str] = None) -> list[dict]:
        with self._lock:
            alerts = [a for a in self._recent if level is None or a["level"] == level]
        return list(reversed(alerts))[:limit]

    # convenience checks

    def check_calorie_deviation(
        self, actual: float, target: float, context: Optional[dict] = None, trace_id: Optional[str] = None
    ) -> Optional[dict]:
        if not target:
            return None
        deviation = abs((actual - target) / target) * 100
        return self.check_threshold(
            "calorie_deviation",
            deviation,
            {
                **(context or {}),
                "actualCalories": actual,
                "targetCalories": target,
                "deviationPercent": round(deviation, 2),
            },
            trace_id=trace_id,
        )

    def check_validation_result(
        self, result: dict, context: Optional[dict] = None, trace_id: Optional[str] = None
    ) -> list[dict]:
        alerts = []
        critical = result.get("critical") or []
        warnings = result.get("warnings") or []
        if critical:
            alert = self.emit(
                CRITICAL,
                "validation_critical",
                {**(context or {}), "issues": critical, "count": len(critical)},
                trace_id=trace_id,
            )
            if alert:
                alerts.append(alert)
        if len(warnings) > 5:
            alert = self.emit(
                WARNING,
                "validation_warning",
                {**(context or {}), "issues": warnings[:10], "count": len(warnings)},
                trace_id=trace_id,
            )
            if alert:
                alerts.append(alert)
        return alerts

    def alert_pipeline_failure(
        self, stage: str, exc: BaseException, context: Optional[dict] = None, trace_id: Optional[str] = None
    ) -> Optional[dict]:
        stack = traceback.format_exception(type(exc), exc, exc.__traceback__)
        return self.emit(
            CRITICAL,
            "pipeline_failure",
            {
                **(context or {}),
                "stage": stage,
                "errorMessage": str(exc),
                "errorStack": "".join(stack).splitlines()[:5],
                "message": "Pipeline execution failed",
            },
            trace_id=trace_id,
        )

    def alert_model_exhausted(
        self, day_number: int, model: Optional[str], exc: BaseException, trace_id: Optional[str] = None
    ) -> Optional[dict]:
        return self.emit(
            WARNING,
            "llm_fallback_failed",
            {"dayNumber": day_number, "model": model, "errorMessage": str(exc)},
            trace_id=trace_id,
        )

    def alert_market_run_failure(
        self, ingredient_key: str, reason: str, context: Optional[dict] = None, trace_id: Optional[str] = None
    ) -> Optional[dict]:
        return self.emit(
            WARNING,
            "market_run_failure",
            {
                **(context or {}),
                "ingredientKey": ingredient_key,
                "reason": reason,
                "message": "Market run failed to find products",
            },
            trace_id=trace_id,
        )


class WebhookNotifier:
    """Alert hook that POSTs each alert as JSON."""

    def __init__(self, url: str, timeout: float = 5.0) -> None:
        self.url = url
        self.timeout = timeout
        self.__name__ = "webhook"

    def __call__(self, alert: dict) -> None:
        resp = httpx.post(self.url, json=alert, timeout=self.timeout)
        resp.raise_for_status()
