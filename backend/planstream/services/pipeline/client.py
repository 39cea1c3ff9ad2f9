"""The macro/pricing pipeline that runs on each validated day.

The pipeline lives outside this service. ``HttpDayPipeline`` talks to it over
HTTP; ``passthrough_pipeline`` stands in when no pipeline URL is configured.
Either returns a dict with at least ``meals`` and optionally ``dayTotals``,
``validation``, ``ingredients``, ``invariants`` and ``stats``.
"""

from typing import Optional, Protocol

import httpx

from planstream.errors import PIPELINE_EXECUTION_FAILED, InvariantViolationError, PipelineError
from planstream.logging import get_logger
from planstream.utils.timing import time_span

logger = get_logger(__name__)


class DayPipeline(Protocol):
    def __call__(self, raw_meals: list, targets: dict, day_number: int, trace_id: str) -> dict: ...


def passthrough_pipeline(raw_meals: list, targets: dict, day_number: int, trace_id: str) -> dict:
    item_count = sum(len(meal.get("items") or []) for meal in raw_meals)
    return {
        "meals": raw_meals,
        "dayTotals": {},
        "validation": {"critical": [], "warnings": []},
        "ingredients": [],
        "stats": {"mealCount": len(raw_meals), "itemCount": item_count},
    }


class HttpDayPipeline:
    def __init__(self, base_url: str, timeout: float = 60.0, client: Optional[httpx.Client] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    def _post(self, payload: dict) -> httpx.Response:
        url = f"{self.base_url}/execute"
        if self._client is not None:
            return self._client.post(url, json=payload, timeout=self.timeout)
        with httpx.Client(timeout=self.timeout) as client:
            return client.post(url, json=payload)

    def __call__(self, raw_meals: list, targets: dict, day_number: int, trace_id: str) -> dict:
        payload = {"rawMeals": raw_meals, "targets": targets, "dayNumber": day_number, "traceId": trace_id}
        logger.info("pipeline.execute day=%s meals=%s trace=%s", day_number, len(raw_meals), trace_id)
        try:
            with time_span("pipeline.execute", day=day_number):
                resp = self._post(payload)
        except httpx.HTTPError as exc:
            raise PipelineError(
                PIPELINE_EXECUTION_FAILED,
                f"pipeline request failed: {exc}",
                trace_id=trace_id,
                stage="pipeline",
                context={"dayNumber": day_number},
                recoverable=True,
            ) from exc

        if resp.status_code == 409:
            body = _json_or_empty(resp)
            if body.get("invariantId"):
                raise InvariantViolationError(
                    body["invariantId"],
                    body.get("message") or "pipeline blocked the day on an invariant",
                    context={"dayNumber": day_number, "details": body.get("details")},
                    trace_id=trace_id,
                    stage="pipeline",
                )
        if resp.status_code >= 400:
            raise PipelineError(
                PIPELINE_EXECUTION_FAILED,
                f"pipeline returned HTTP {resp.status_code}",
                trace_id=trace_id,
                stage="pipeline",
                context={"dayNumber": day_number, "body": resp.text[:500]},
                recoverable=True,
            )

        body = _json_or_empty(resp)
        if not isinstance(body.get("meals"), list):
            raise PipelineError(
                PIPELINE_EXECUTION_FAILED,
                "pipeline response missing meals",
                trace_id=trace_id,
                stage="pipeline",
                context={"dayNumber": day_number},
                recoverable=True,
            )
        return body


def _json_or_empty(resp: httpx.Response) -> dict:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def build_pipeline(url: str, timeout: float) -> DayPipeline:
    if not url:
        logger.info("pipeline.passthrough reason=no_pipeline_url")
        return passthrough_pipeline
    return HttpDayPipeline(url, timeout=timeout)
