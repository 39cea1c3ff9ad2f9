"""Error codes and exception types shared by the plan generation flow.

Codes are stable strings: they appear in ``day:error`` and ``plan:error``
payloads and are what clients branch on.
"""

import traceback
from typing import Any, Optional

INVARIANT_BLOCKING = "INVARIANT_BLOCKING"
INVARIANT_RESPONSE_BLOCKED = "INVARIANT_RESPONSE_BLOCKED"
VALIDATION_CRITICAL = "VALIDATION_CRITICAL"
LLM_VALIDATION_FAILED = "LLM_VALIDATION_FAILED"
LLM_RETRY_EXHAUSTED = "LLM_RETRY_EXHAUSTED"
LLM_PRIMARY_FAILED = "LLM_PRIMARY_FAILED"
LLM_FALLBACK_FAILED = "LLM_FALLBACK_FAILED"
PIPELINE_EXECUTION_FAILED = "PIPELINE_EXECUTION_FAILED"
DAY_GENERATION_FAILED = "DAY_GENERATION_FAILED"
NUTRITION_LOOKUP_FAILED = "NUTRITION_LOOKUP_FAILED"
UNKNOWN_ERROR = "UNKNOWN_ERROR"
HANDLER_CRASHED = "HANDLER_CRASHED"
STREAM_TERMINATED = "STREAM_TERMINATED"

ERROR_CODES = (
    INVARIANT_BLOCKING,
    INVARIANT_RESPONSE_BLOCKED,
    VALIDATION_CRITICAL,
    LLM_VALIDATION_FAILED,
    LLM_RETRY_EXHAUSTED,
    LLM_PRIMARY_FAILED,
    LLM_FALLBACK_FAILED,
    PIPELINE_EXECUTION_FAILED,
    DAY_GENERATION_FAILED,
    NUTRITION_LOOKUP_FAILED,
    UNKNOWN_ERROR,
    HANDLER_CRASHED,
    STREAM_TERMINATED,
)

RESPONSE_INVARIANT_ID = "INV-001-RESPONSE"


class PipelineError(Exception):
    def __init__(
        self,
        code: str,
        message: str,
        *,
        trace_id: Optional[str] = None,
        stage: Optional[str] = None,
        context: Optional[dict] = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = code or UNKNOWN_ERROR
        self.message = message
        self.trace_id = trace_id
        self.stage = stage
        self.context = context or {}
        self.recoverable = recoverable

    def to_dict(self) -> dict:
        out = {
            "code": self.code,
            "message": self.message,
            "traceId": self.trace_id,
            "stage": self.stage,
            "recoverable": self.recoverable,
            "context": self.context,
        }
        if self.__cause__ is not None:
            stack = traceback.format_exception(type(self.__cause__), self.__cause__, self.__cause__.__traceback__)
            out["cause"] = {
                "type": type(self.__cause__).__name__,
                "message": str(self.__cause__),
                "stack": "".join(stack).splitlines()[:5],
            }
        return out

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        *,
        trace_id: Optional[str] = None,
        stage: Optional[str] = None,
        context: Optional[dict] = None,
    ) -> "PipelineError":
        if isinstance(exc, PipelineError):
            if trace_id and not exc.trace_id:
                exc.trace_id = trace_id
            if stage and not exc.stage:
                exc.stage = stage
            if context:
                exc.context = {**context, **exc.context}
            return exc
        err = cls(
            classify_error(exc),
            safe_error_message(exc),
            trace_id=trace_id,
            stage=stage,
            context=context,
        )
        err.__cause__ = exc
        return err


class InvariantViolationError(PipelineError):
    def __init__(self, invariant_id: str, message: str, *, context: Optional[dict] = None, **kwargs: Any) -> None:
        code = INVARIANT_RESPONSE_BLOCKED if invariant_id == RESPONSE_INVARIANT_ID else INVARIANT_BLOCKING
        super().__init__(code, message, context={"invariantId": invariant_id, **(context or {})}, **kwargs)
        self.invariant_id = invariant_id


class PlanValidationError(PipelineError):
    def __init__(self, message: str, validation_result: Optional[dict] = None, **kwargs: Any) -> None:
        super().__init__(VALIDATION_CRITICAL, message, **kwargs)
        self.validation_result = validation_result or {}


class ModelError(PipelineError):
    """Failure talking to the generative model or interpreting its output."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        model: Optional[str] = None,
        retryable: bool = True,
        **kwargs: Any,
    ) -> None:
        super().__init__(code, message, **kwargs)
        self.model = model
        self.retryable = retryable


class DayGenerationError(PipelineError):
    def __init__(
        self,
        day_number: int,
        message: str,
        *,
        code: str = DAY_GENERATION_FAILED,
        original: Optional[BaseException] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(code, message, recoverable=True, **kwargs)
        self.day_number = day_number
        if original is not None:
            self.__cause__ = original


def classify_error(exc: Optional[BaseException]) -> str:
    """Map any exception onto the error-code catalogue."""
    if exc is None:
        return UNKNOWN_ERROR
    if isinstance(exc, PipelineError):
        return exc.code
    msg = str(exc).lower()
    if "llm" in msg and "retry" in msg:
        return LLM_RETRY_EXHAUSTED
    if "nutrition" in msg or "lookup" in msg:
        return NUTRITION_LOOKUP_FAILED
    if "pipeline" in msg:
        return PIPELINE_EXECUTION_FAILED
    return UNKNOWN_ERROR


def safe_error_message(exc: Optional[BaseException]) -> str:
    """Client-facing message; internal exception types only expose their class name."""
    if exc is None:
        return "An unknown error occurred"
    if isinstance(exc, PipelineError):
        return exc.message
    text = str(exc).strip()
    if not text:
        return f"{type(exc).__name__} raised without a message"
    return text[:500]
