import time
from typing import Any, Optional

import dspy
from sqlalchemy.exc import SQLAlchemyError

from planstream.config import settings
from planstream.logging import get_logger
from planstream.storage.db import get_session
from planstream.storage.repositories import log_llm_call
from planstream.utils.timing import _format_duration

logger = get_logger(__name__)

_lm_cache: dict[str, dspy.LM] = {}


def make_lm(model: str) -> dspy.LM:
    """One LM per model name; ``provider/model`` routing is handled by dspy."""
    lm = _lm_cache.get(model)
    if lm is None:
        lm = dspy.LM(
            f"{settings.llm_provider}/{model}",
            api_key=settings.llm_api_key or None,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            timeout=settings.llm_timeout_s,
            num_retries=0,
        )
        _lm_cache[model] = lm
    return lm


def configure_dspy() -> None:
    dspy.configure(lm=make_lm(settings.llm_model_primary))
    logger.info(
        "llm.configure provider=%s primary=%s fallback=%s",
        settings.llm_provider,
        settings.llm_model_primary,
        settings.llm_model_fallback,
    )


def run_with_logging(
    prompt_name: str,
    prompt_version: str,
    fn: Any,
    *,
    model: Optional[str] = None,
    trace_id: Optional[str] = None,
    **kwargs: Any,
) -> Any:
    """Call ``fn(**kwargs)`` under ``model`` and record the call in the audit log."""
    model = model or settings.llm_model_primary
    start = time.time()
    logger.info(
        "[TIMING] llm.call.start name=%s version=%s model=%s trace=%s",
        prompt_name,
        prompt_version,
        model,
        trace_id,
    )
    result: Any = None
    failure: Optional[BaseException] = None
    try:
        with dspy.context(lm=make_lm(model)):
            result = fn(**kwargs)
    except Exception as exc:
        failure = exc
        raise
    finally:
        latency_ms = int((time.time() - start) * 1000)
        _audit(
            prompt_name=prompt_name,
            prompt_version=prompt_version,
            model=model,
            trace_id=trace_id,
            input_payload=str(kwargs),
            output_payload=str(result) if failure is None else f"{type(failure).__name__}: {failure}",
            latency_ms=latency_ms,
            succeeded=failure is None,
        )
        logger.info(
            "[TIMING] llm.call.end name=%s model=%s ok=%s latency_ms=%s (%s)",
            prompt_name,
            model,
            failure is None,
            latency_ms,
            _format_duration(latency_ms),
        )
    return result


def _audit(**fields: Any) -> None:
    try:
        with get_session() as session:
            log_llm_call(session=session, **fields)
    except SQLAlchemyError as exc:
        logger.warning("llm.audit_failed name=%s error=%s", fields.get("prompt_name"), exc)
