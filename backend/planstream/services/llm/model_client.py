import json
import re
from dataclasses import dataclass
from string import Template
from typing import Any, Optional

import dspy

from planstream.errors import LLM_FALLBACK_FAILED, LLM_PRIMARY_FAILED, LLM_VALIDATION_FAILED, ModelError
from planstream.logging import get_logger
from planstream.services.llm.dspy_client import run_with_logging
from planstream.services.llm.prompts import DAY_PLAN_PROMPT_VERSION, DAY_PLAN_TEMPLATE

logger = get_logger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


@dataclass(frozen=True)
class ModelPrompt:
    name: str
    version: str
    instructions: str
    request: str
    trace_id: Optional[str] = None


class JsonResponseSignature(dspy.Signature):
    """Follow the instructions and answer the request with a single JSON document."""

    prompt_template: str = dspy.InputField()
    request: str = dspy.InputField(desc="JSON describing what to generate")
    response_json: str = dspy.OutputField(desc="one JSON document, no prose, no code fences")


class JsonGenerator(dspy.Module):
    def __init__(self) -> None:
        super().__init__()
        self.predict = dspy.Predict(JsonResponseSignature)

    def forward(self, instructions: str, request: str) -> dspy.Prediction:
        return self.predict(prompt_template=instructions, request=request)


def parse_model_json(text: Any) -> Any:
    """Parse model output as JSON, tolerating a surrounding code fence."""
    if not isinstance(text, str):
        raise ValueError(f"expected text, got {type(text).__name__}")
    cleaned = _FENCE_RE.sub("", text.strip()).strip()
    if not cleaned:
        raise ValueError("empty response")
    return json.loads(cleaned)


def _is_retryable(exc: BaseException) -> bool:
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and 400 <= status < 500 and status != 429:
        return False
    return True


class ModelClient:
    """Single model call: variant selection by attempt number, JSON out or ``ModelError``."""

    def __init__(
        self,
        primary: str,
        fallback: str,
        primary_attempts: int = 3,
        generator: Any = None,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.primary_attempts = primary_attempts
        self._generator = generator or JsonGenerator()

    def model_for_attempt(self, attempt: int) -> str:
        return self.primary if attempt <= self.primary_attempts else self.fallback

    def call(self, prompt: ModelPrompt, attempt: int = 1) -> Any:
        model = self.model_for_attempt(attempt)
        failed_code = LLM_PRIMARY_FAILED if model == self.primary else LLM_FALLBACK_FAILED
        try:
            prediction = run_with_logging(
                prompt.name,
                prompt.version,
                self._generator,
                model=model,
                trace_id=prompt.trace_id,
                instructions=prompt.instructions,
                request=prompt.request,
            )
        except Exception as exc:  # noqa: BLE001 - provider errors are normalized here
            raise ModelError(
                failed_code,
                f"model call failed: {exc}",
                model=model,
                retryable=_is_retryable(exc),
                context={"attempt": attempt, "prompt": prompt.name},
            ) from exc

        text = getattr(prediction, "response_json", None)
        try:
            return parse_model_json(text)
        except (ValueError, json.JSONDecodeError) as exc:
            snippet = text[:200] if isinstance(text, str) else repr(text)[:200]
            logger.warning(
                "llm.unparsable name=%s model=%s attempt=%s error=%s snippet=%s",
                prompt.name,
                model,
                attempt,
                exc,
                snippet,
            )
            raise ModelError(
                LLM_VALIDATION_FAILED,
                f"model returned unusable JSON: {exc}",
                model=model,
                retryable=True,
                context={"attempt": attempt, "prompt": prompt.name},
            ) from exc


def build_day_prompt(
    profile: dict,
    targets: dict,
    day: int,
    total_days: int,
    meal_targets: Optional[dict] = None,
    protein_cap: float = 3.0,
    trace_id: Optional[str] = None,
) -> ModelPrompt:
    instructions = Template(DAY_PLAN_TEMPLATE).safe_substitute(
        protein_cap=f"{protein_cap:g}",
        day=day,
        total_days=total_days,
    )
    request = {
        "day": day,
        "totalDays": total_days,
        "profile": profile,
        "targets": targets,
        "mealTargets": meal_targets or {},
        "maxProteinGrams": _protein_cap_grams(profile, protein_cap),
    }
    return ModelPrompt(
        name="day_plan",
        version=DAY_PLAN_PROMPT_VERSION,
        instructions=instructions,
        request=json.dumps(request, sort_keys=True, default=str),
        trace_id=trace_id,
    )


def _protein_cap_grams(profile: dict, protein_cap: float) -> Optional[float]:
    try:
        weight = float(profile.get("weight"))
    except (TypeError, ValueError):
        return None
    if weight <= 0:
        return None
    return round(weight * protein_cap, 1)
