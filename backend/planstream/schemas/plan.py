from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class GeneratePlanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    profile: dict[str, Any]  # user profile: weight, goal, dietary, eatingOccasions, days, ...
    targets: dict[str, Any]  # daily targets: calories, protein, fat, carbs
    days: int | None = None  # falls back to profile["days"], then max_days
    meal_targets: dict[str, Any] = Field(default_factory=dict, alias="mealTargets")


class TraceAction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: Literal["create", "event", "complete"]
    trace_id: str | None = Field(default=None, alias="traceId")
    metadata: dict[str, Any] = {}
    event_type: str | None = Field(default=None, alias="eventType")
    data: dict[str, Any] = {}
    status: str | None = None
    result: dict[str, Any] = {}
