"""Drives one multi-day plan run.

Per day: ``pending -> cache_check -> (cache_hit | generating) -> (validated | failed)``.
Per run: ``initializing -> generating_days -> aggregating -> (completed | failed)``.

A failed day is reported with ``day:error`` (recoverable) and the run goes on,
unless ``abort_on_day_error`` is set. In that case the failing day sends no
``day:error``; the run ends with a single ``plan:error`` naming the day. A run
with no successful day always ends in ``plan:error``.
"""

import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from planstream.config import Settings, settings as default_settings
from planstream.errors import (
    DAY_GENERATION_FAILED,
    LLM_FALLBACK_FAILED,
    LLM_VALIDATION_FAILED,
    DayGenerationError,
    InvariantViolationError,
    ModelError,
    PipelineError,
    PlanValidationError,
)
from planstream.logging import RunLogger, get_logger
from planstream.services.alerting.engine import AlertEngine
from planstream.services.cache.keys import plan_cache_key
from planstream.services.cache.store import CacheStore, cache_get, cache_set
from planstream.services.extraction.extractor import canonicalize, extract_meals
from planstream.services.llm.chef import generate_instructions
from planstream.services.llm.model_client import ModelClient, build_day_prompt
from planstream.services.llm.retry import generate_with_fallback
from planstream.services.pipeline.client import DayPipeline
from planstream.services.streaming.emitter import StreamEmitter, StreamSink
from planstream.services.tracing import recorder as trace_events
from planstream.services.tracing.recorder import TraceRecorder
from planstream.utils.timing import Stopwatch

logger = get_logger(__name__)

PHASE_INITIALIZING = "initializing"
PHASE_GENERATING = "generating_days"
PHASE_AGGREGATING = "aggregating"

SOURCE_CACHE = "cache"
SOURCE_MODEL = "model"

STATUS_SUCCESS = "success"
STATUS_PARTIAL = "partial"
STATUS_ERROR = "error"

_PROFILE_REDACTED_FIELDS = ("name", "height", "weight", "age", "bodyFat")


def new_trace_id() -> str:
    return f"trace_{uuid.uuid4().hex}"


def normalize_key(key: Any) -> str:
    return " ".join(str(key).lower().split())


def redact_profile(profile: dict) -> dict:
    return {k: ("[REDACTED]" if k in _PROFILE_REDACTED_FIELDS else v) for k, v in profile.items()}


def resolve_day_count(days: Optional[int], profile: dict, max_days: int) -> int:
    """Requested day count: explicit ``days``, else ``profile['days']``, else ``max_days``."""
    value = days if days is not None else profile.get("days", max_days)
    try:
        count = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"days must be an integer, got {value!r}")
    if count < 1 or count > max_days:
        raise ValueError(f"days must be between 1 and {max_days}, got {count}")
    return count


@dataclass
class PlanRequest:
    profile: dict
    targets: dict
    days: int
    meal_targets: dict = field(default_factory=dict)


@dataclass
class DayResult:
    day_number: int
    ok: bool
    source: Optional[str] = None
    meals: list = field(default_factory=list)
    day_totals: dict = field(default_factory=dict)
    stats: dict = field(default_factory=dict)
    ingredient_keys: set = field(default_factory=set)
    error: Optional[PipelineError] = None


@dataclass
class RunOutcome:
    trace_id: str
    status: str
    payload: dict
    error: Optional[PipelineError] = None


class PlanOrchestrator:
    def __init__(
        self,
        *,
        cache: CacheStore,
        model_client: ModelClient,
        pipeline: DayPipeline,
        traces: TraceRecorder,
        alerts: AlertEngine,
        config: Settings = default_settings,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.cache = cache
        self.model_client = model_client
        self.pipeline = pipeline
        self.traces = traces
        self.alerts = alerts
        self.config = config
        self.sleep = sleep

    def run(self, request: PlanRequest, sink: StreamSink, trace_id: Optional[str] = None) -> RunOutcome:
        trace_id = trace_id or new_trace_id()
        watch = Stopwatch()
        with StreamEmitter(sink, trace_id) as emitter:
            log = RunLogger(logger, trace_id, emitter)
            self.traces.create(
                trace_id,
                {
                    "days": request.days,
                    "profile": redact_profile(request.profile),
                    "targets": request.targets,
                    "mealTargets": request.meal_targets,
                },
            )
            log.info("plan.start days=%s concurrency=%s", request.days, self.config.day_concurrency, tag="PLAN")
            phase = PHASE_INITIALIZING
            try:
                phase = PHASE_GENERATING
                emitter.phase_start(PHASE_GENERATING, f"Generating {request.days} day(s)")
                self.traces.stage_start(trace_id, PHASE_GENERATING, {"days": request.days})
                results = self._generate_days(request, emitter, log, trace_id)
                succeeded = [r for r in results if r.ok]
                failed = [r for r in results if not r.ok]
                emitter.phase_end(PHASE_GENERATING, {"successfulDays": len(succeeded), "failedDays": len(failed)})
                self.traces.stage_end(
                    trace_id,
                    PHASE_GENERATING,
                    {"successfulDays": len(succeeded), "failedDays": len(failed)},
                    watch.elapsed_ms,
                )
                self._check_day_failure_rate(len(failed), len(results), trace_id)

                if not succeeded:
                    raise PipelineError(
                        DAY_GENERATION_FAILED,
                        f"All {len(results)} day(s) failed to generate",
                        trace_id=trace_id,
                        stage=PHASE_GENERATING,
                        context={"failedDayDetails": [_failure_detail(r) for r in failed]},
                    )

                phase = PHASE_AGGREGATING
                emitter.phase_start(PHASE_AGGREGATING, "Assembling the plan")
                payload = self._aggregate(results, trace_id, watch)
                emitter.phase_end(PHASE_AGGREGATING, {"status": payload["status"]})
            except Exception as exc:  # noqa: BLE001 - every failure ends in plan:error
                return self._fail(exc, phase, request, emitter, log, trace_id, watch)

            log.info(
                "plan.complete status=%s successful=%s failed=%s duration_ms=%s",
                payload["status"],
                payload["stats"]["successfulDays"],
                payload["stats"]["failedDays"],
                payload["stats"]["durationMs"],
                tag="PLAN",
            )
            self.traces.complete(trace_id, payload["status"], {"stats": payload["stats"], "targets": request.targets})
            emitter.complete(payload)
            return RunOutcome(trace_id=trace_id, status=payload["status"], payload=payload)

    # days

    def _generate_days(self, request: PlanRequest, emitter: StreamEmitter, log: RunLogger, trace_id: str) -> list[DayResult]:
        day_numbers = list(range(1, request.days + 1))
        workers = max(1, min(self.config.day_concurrency, len(day_numbers)))
        if workers == 1:
            return [self._process_day(day, request, emitter, log, trace_id) for day in day_numbers]

        results: list[DayResult] = []
        abort: Optional[DayGenerationError] = None
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"plan-{trace_id[-6:]}") as ex:
            futures = {ex.submit(self._process_day, day, request, emitter, log, trace_id): day for day in day_numbers}
            for fut in as_completed(futures):
                if fut.cancelled():
                    continue
                try:
                    results.append(fut.result())
                except DayGenerationError as exc:
                    if abort is None:
                        abort = exc
                        for pending in futures:
                            pending.cancel()
        if abort is not None:
            raise abort
        return sorted(results, key=lambda r: r.day_number)

    def _process_day(
        self,
        day: int,
        request: PlanRequest,
        emitter: StreamEmitter,
        log: RunLogger,
        trace_id: str,
    ) -> DayResult:
        stage = f"day_{day}"
        watch = Stopwatch()
        emitter.day_start(day, request.days)
        self.traces.stage_start(trace_id, stage)
        try:
            log.debug("day.state day=%s state=cache_check", day)
            key = plan_cache_key(
                self.config.cache_prefix,
                self.config.cache_version,
                day,
                request.profile,
                request.targets,
                request.meal_targets,
            )
            extraction = extract_meals(cache_get(self.cache, key, log), log, source="cache")
            if extraction.valid:
                source = SOURCE_CACHE
                meals = extraction.meals
                log.info("day.cache.hit day=%s provenance=%s", day, extraction.provenance, tag="CACHE")
                self.traces.add_event(trace_id, trace_events.CACHE, {"day": day, "hit": True, "provenance": extraction.provenance})
            else:
                self.traces.add_event(trace_id, trace_events.CACHE, {"day": day, "hit": False, "reason": extraction.reason})
                log.debug("day.state day=%s state=generating", day)
                meals = self._generate_meals(day, request, log, trace_id)
                source = SOURCE_MODEL
                cache_set(self.cache, key, canonicalize(meals), self.config.plan_cache_ttl_hours * 3600, log)

            result = self.pipeline(meals, request.targets, day, trace_id)
            final_meals = list(result.get("meals") or meals)
            self._report_pipeline_result(day, result, final_meals, request, emitter, trace_id)

            if self.config.enable_chef_instructions:
                final_meals = [
                    {
                        **meal,
                        **generate_instructions(
                            self.model_client,
                            meal,
                            trace_id=trace_id,
                            base_delay_s=self.config.llm_retry_base_delay_s,
                            sleep=self.sleep,
                            log=log,
                        ),
                    }
                    for meal in final_meals
                ]

            day_totals = result.get("dayTotals") or {}
            keys = {
                normalize_key(item["key"])
                for meal in final_meals
                for item in (meal.get("items") or [])
                if isinstance(item, dict) and item.get("key")
            }
            log.debug("day.state day=%s state=validated", day)
            emitter.day_complete(day, {"meals": final_meals, "dayTotals": day_totals}, source=source)
            self.traces.stage_end(trace_id, stage, {"source": source, "meals": len(final_meals)}, watch.elapsed_ms)
            return DayResult(
                day_number=day,
                ok=True,
                source=source,
                meals=final_meals,
                day_totals=day_totals,
                stats=result.get("stats") or {},
                ingredient_keys=keys,
            )
        except Exception as exc:  # noqa: BLE001 - day failures are isolated
            return self._day_failed(day, exc, emitter, log, trace_id, stage)

    def _generate_meals(self, day: int, request: PlanRequest, log: RunLogger, trace_id: str) -> list:
        prompt = build_day_prompt(
            request.profile,
            request.targets,
            day,
            request.days,
            request.meal_targets,
            protein_cap=self.config.protein_cap_g_per_kg,
            trace_id=trace_id,
        )
        self.traces.add_event(
            trace_id,
            trace_events.LLM_REQUEST,
            {"day": day, "prompt": prompt.name, "version": prompt.version, "model": self.model_client.primary},
        )
        raw = generate_with_fallback(
            self.model_client,
            prompt,
            base_delay_s=self.config.llm_retry_base_delay_s,
            sleep=self.sleep,
            log=log,
        )
        extraction = extract_meals(raw, log, source="model")
        self.traces.add_event(
            trace_id,
            trace_events.LLM_RESPONSE,
            {"day": day, "valid": extraction.valid, "reason": extraction.reason, "provenance": extraction.provenance},
        )
        if not extraction.valid:
            raise DayGenerationError(
                day,
                f"Model output for day {day} rejected: {extraction.reason}",
                code=LLM_VALIDATION_FAILED,
                context={"dayNumber": day, "reason": extraction.reason},
            )
        log.info("day.generated day=%s meals=%s provenance=%s", day, len(extraction.meals), extraction.provenance, tag="LLM")
        return extraction.meals

    def _report_pipeline_result(
        self,
        day: int,
        result: dict,
        meals: list,
        request: PlanRequest,
        emitter: StreamEmitter,
        trace_id: str,
    ) -> None:
        for ing in result.get("ingredients") or []:
            key = ing.get("key")
            if ing.get("status") == "failed":
                reason = ing.get("reason") or "not found"
                emitter.ingredient_failed(key, reason)
                self.alerts.alert_market_run_failure(key, reason, {"dayNumber": day}, trace_id=trace_id)
            else:
                emitter.ingredient_found(key, ing)

        for meal in meals:
            for item in meal.get("items") or []:
                if isinstance(item, dict) and item.get("_flagged"):
                    emitter.ingredient_flagged(item.get("key"), {"dayNumber": day, **(item.get("_violation") or {})})

        for inv in result.get("invariants") or []:
            emitter.invariant_warning(inv.get("invariantId", "INV-001"), {"dayNumber": day, **inv})

        validation = result.get("validation") or {}
        warnings = validation.get("warnings") or []
        critical = validation.get("critical") or []
        if warnings or critical:
            self.traces.add_event(
                trace_id,
                trace_events.VALIDATION,
                {"day": day, "warnings": len(warnings), "critical": len(critical)},
            )
            self.alerts.check_validation_result(validation, {"dayNumber": day}, trace_id=trace_id)
        if warnings:
            emitter.validation_warning(warnings)
        if critical:
            emitter.validation_failed(critical)
            raise PlanValidationError(
                f"Day {day} failed validation with {len(critical)} critical issue(s)",
                validation,
                trace_id=trace_id,
                stage=f"day_{day}",
                context={"dayNumber": day},
            )

        calories = (result.get("dayTotals") or {}).get("calories")
        target = request.targets.get("calories")
        if calories is not None and target:
            self.alerts.check_calorie_deviation(calories, target, {"dayNumber": day}, trace_id=trace_id)

    def _day_failed(
        self,
        day: int,
        exc: BaseException,
        emitter: StreamEmitter,
        log: RunLogger,
        trace_id: str,
        stage: str,
    ) -> DayResult:
        err = PipelineError.from_exception(exc, trace_id=trace_id, stage=stage, context={"dayNumber": day})
        log.error("day.failed day=%s code=%s error=%s", day, err.code, err.message, tag="DAY")
        self.traces.error(trace_id, stage, exc)

        if isinstance(exc, InvariantViolationError):
            emitter.invariant_violation(exc.invariant_id, {"dayNumber": day, "message": exc.message, **exc.context})
        if isinstance(exc, ModelError) and exc.code == LLM_FALLBACK_FAILED:
            self.alerts.alert_model_exhausted(day, exc.model, exc, trace_id=trace_id)

        if self.config.abort_on_day_error:
            raise DayGenerationError(
                day,
                f"Day {day} failed and abort_on_day_error is set: {err.message}",
                code=err.code,
                original=exc,
                trace_id=trace_id,
                stage=stage,
                context={"dayNumber": day},
            )

        emitter.day_error(day, err.code, err.message, recoverable=True)
        return DayResult(day_number=day, ok=False, error=err)

    # aggregate

    def _aggregate(self, results: list[DayResult], trace_id: str, watch: Stopwatch) -> dict:
        succeeded = [r for r in results if r.ok]
        failed = [r for r in results if not r.ok]
        unique: set[str] = set()
        for r in succeeded:
            unique |= r.ingredient_keys

        stats = {
            "totalDays": len(results),
            "successfulDays": len(succeeded),
            "failedDays": len(failed),
            "cacheHits": sum(1 for r in succeeded if r.source == SOURCE_CACHE),
            "modelGenerations": sum(1 for r in succeeded if r.source == SOURCE_MODEL),
            "uniqueIngredientCount": len(unique),
            "durationMs": watch.elapsed_ms,
        }
        return {
            "status": STATUS_PARTIAL if failed else STATUS_SUCCESS,
            "mealPlan": [
                {"dayNumber": r.day_number, "meals": r.meals, "dayTotals": r.day_totals, "source": r.source}
                for r in succeeded
            ],
            "meals": [{**meal, "dayNumber": r.day_number} for r in succeeded for meal in r.meals],
            "uniqueIngredients": sorted(unique),
            "results": [{"dayNumber": r.day_number, "source": r.source, "stats": r.stats} for r in succeeded],
            "failedDayDetails": [_failure_detail(r) for r in failed],
            "stats": stats,
            "traceId": trace_id,
        }

    def _check_day_failure_rate(self, failed: int, total: int, trace_id: str) -> None:
        if total:
            self.alerts.check_threshold(
                "day_failure_rate",
                failed / total * 100,
                {"failedDays": failed, "totalDays": total},
                trace_id=trace_id,
            )

    def _fail(
        self,
        exc: BaseException,
        phase: str,
        request: PlanRequest,
        emitter: StreamEmitter,
        log: RunLogger,
        trace_id: str,
        watch: Stopwatch,
    ) -> RunOutcome:
        err = PipelineError.from_exception(exc, trace_id=trace_id, stage=phase)
        log.error("plan.failed phase=%s code=%s error=%s", phase, err.code, err.message, tag="PLAN")
        self.traces.error(trace_id, phase, exc)
        self.alerts.alert_pipeline_failure(phase, exc, {"days": request.days, "code": err.code}, trace_id=trace_id)
        emitter.phase_error(phase, err.code, err.message)
        context: dict = {"stage": phase}
        if isinstance(exc, DayGenerationError):
            context["dayNumber"] = exc.day_number
        if "failedDayDetails" in err.context:
            context["failedDayDetails"] = err.context["failedDayDetails"]
        self.traces.complete(trace_id, STATUS_ERROR, {"code": err.code, "durationMs": watch.elapsed_ms})
        emitter.error(err.code, err.message, **context)
        return RunOutcome(trace_id=trace_id, status=STATUS_ERROR, payload={"code": err.code, "message": err.message, **context}, error=err)


def _failure_detail(result: DayResult) -> dict:
    err = result.error
    return {
        "dayNumber": result.day_number,
        "code": err.code if err else DAY_GENERATION_FAILED,
        "message": err.message if err else "unknown failure",
    }
