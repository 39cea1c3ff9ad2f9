"""Retry and fallback around ``ModelClient.call``.

``retry_with_backoff`` is the generic loop: linear backoff (``base * attempt``)
through an injected ``sleep``. ``generate_with_fallback`` is used for day
generation: the primary model gets the full retry budget, then the fallback
model gets exactly one attempt.
"""

import time
from typing import Any, Callable, Optional, TypeVar

from planstream.errors import LLM_FALLBACK_FAILED, LLM_PRIMARY_FAILED, LLM_RETRY_EXHAUSTED, ModelError
from planstream.logging import get_logger
from planstream.services.llm.model_client import ModelClient, ModelPrompt

logger = get_logger(__name__)

T = TypeVar("T")


def retry_with_backoff(
    fn: Callable[[int], T],
    *,
    max_attempts: int,
    base_delay_s: float,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "llm",
    log: Any = None,
) -> T:
    log = log or logger
    last: Optional[ModelError] = None
    attempt = 0
    for attempt in range(1, max_attempts + 1):
        try:
            return fn(attempt)
        except ModelError as exc:
            last = exc
            log.warning(
                "llm.attempt_failed label=%s attempt=%s/%s model=%s code=%s retryable=%s error=%s",
                label,
                attempt,
                max_attempts,
                exc.model,
                exc.code,
                exc.retryable,
                exc.message,
            )
            if not exc.retryable:
                break
            if attempt < max_attempts:
                sleep(base_delay_s * attempt)
    if last is None:
        raise ValueError("max_attempts must be at least 1")
    raise ModelError(
        LLM_RETRY_EXHAUSTED,
        f"{label}: gave up after {attempt} attempt(s): {last.message}",
        model=last.model,
        retryable=False,
        context={"attempts": attempt, "lastCode": last.code},
    ) from last


def generate_with_fallback(
    client: ModelClient,
    prompt: ModelPrompt,
    *,
    base_delay_s: float,
    sleep: Callable[[float], None] = time.sleep,
    log: Any = None,
) -> Any:
    log = log or logger
    try:
        return retry_with_backoff(
            lambda attempt: client.call(prompt, attempt),
            max_attempts=client.primary_attempts,
            base_delay_s=base_delay_s,
            sleep=sleep,
            label=prompt.name,
            log=log,
        )
    except ModelError as primary_exc:
        log.warning(
            "llm.primary_failed code=%s name=%s model=%s error=%s escalating_to=%s",
            LLM_PRIMARY_FAILED,
            prompt.name,
            client.primary,
            primary_exc.message,
            client.fallback,
        )
        primary_error = primary_exc

    fallback_attempt = client.primary_attempts + 1
    try:
        return client.call(prompt, fallback_attempt)
    except ModelError as exc:
        log.error(
            "llm.fallback_failed code=%s name=%s attempt=%s model=%s error=%s",
            LLM_FALLBACK_FAILED,
            prompt.name,
            fallback_attempt,
            exc.model,
            exc.message,
        )
        raise ModelError(
            LLM_FALLBACK_FAILED,
            f"Both primary ({client.primary}) and fallback ({client.fallback}) models failed: {exc.message}",
            model=exc.model,
            retryable=False,
            context={"primaryError": primary_error.message, "fallbackError": exc.message},
        ) from exc
