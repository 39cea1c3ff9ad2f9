from typing import Optional

from sqlmodel import Session, select

from planstream.logging import get_logger
from planstream.storage.models import LLMCallLog

logger = get_logger(__name__)


def log_llm_call(
    session: Session,
    prompt_name: str,
    prompt_version: str,
    model: str,
    input_payload: str,
    output_payload: str,
    latency_ms: int,
    trace_id: Optional[str] = None,
    succeeded: bool = True,
) -> None:
    session.add(
        LLMCallLog(
            prompt_name=prompt_name,
            prompt_version=prompt_version,
            model=model,
            trace_id=trace_id,
            input_payload=input_payload,
            output_payload=output_payload,
            latency_ms=latency_ms,
            succeeded=succeeded,
        )
    )
    session.commit()


def list_llm_calls(session: Session, trace_id: str) -> list[LLMCallLog]:
    return list(
        session.exec(
            select(LLMCallLog).where(LLMCallLog.trace_id == trace_id).order_by(LLMCallLog.id)
        )
    )
