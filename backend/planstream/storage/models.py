from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel


class LLMCallLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    prompt_name: str
    prompt_version: str
    model: str
    trace_id: Optional[str] = Field(default=None, index=True)
    input_payload: str
    output_payload: str
    latency_ms: int
    succeeded: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
