import copy
import json
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from planstream import main
from planstream.config import Settings
from planstream.errors import LLM_PRIMARY_FAILED, ModelError
from planstream.services.alerting.engine import AlertEngine
from planstream.services.cache.store import InMemoryCacheStore
from planstream.services.container import Services
from planstream.services.pipeline.client import passthrough_pipeline
from planstream.services.tracing.recorder import TraceRecorder
from planstream.services.tracing.store import InMemoryTraceStore
from planstream.storage import db as db_module

SAMPLE_MEALS = [
    {
        "type": "breakfast",
        "name": "Overnight oats",
        "items": [
            {"key": "Rolled Oats", "qty_value": 80, "qty_unit": "g", "stateHint": "dry", "methodHint": None},
            {"key": "greek yogurt", "qty_value": 150, "qty_unit": "g", "stateHint": "as_pack", "methodHint": None},
        ],
    },
    {
        "type": "dinner",
        "name": "Chicken and rice",
        "items": [
            {"key": "chicken breast", "qty_value": 180, "qty_unit": "g", "stateHint": "raw", "methodHint": "grilled"},
            {"key": " White  Rice ", "qty_value": 90, "qty_unit": "g", "stateHint": "dry", "methodHint": "boiled"},
        ],
    },
]

PROFILE = {"name": "Sam", "weight": 80, "age": 31, "goal": "maintain", "dietary": "none", "days": 3}
TARGETS = {"calories": 2400, "protein": 160, "fat": 80, "carbs": 260}


def failing(code: str = LLM_PRIMARY_FAILED, retryable: bool = True):
    def _raise(attempt):
        raise ModelError(code, f"upstream exploded on attempt {attempt}", model=f"attempt-{attempt}", retryable=retryable)

    return _raise


class FakeModelClient:
    """Stands in for ModelClient. ``responses`` maps day number to a value or a callable(attempt)."""

    def __init__(self, responses=None, primary_attempts: int = 3):
        self.primary = "primary-model"
        self.fallback = "fallback-model"
        self.primary_attempts = primary_attempts
        self.responses = responses or {}
        self.calls = []

    def model_for_attempt(self, attempt: int) -> str:
        return self.primary if attempt <= self.primary_attempts else self.fallback

    def call(self, prompt, attempt: int = 1):
        day = json.loads(prompt.request).get("day")
        model = self.model_for_attempt(attempt)
        self.calls.append({"day": day, "attempt": attempt, "model": model, "prompt": prompt.name})
        behavior = self.responses.get(day, {"meals": SAMPLE_MEALS})
        if callable(behavior):
            return behavior(attempt)
        return copy.deepcopy(behavior)

    def calls_for(self, day):
        return [c for c in self.calls if c["day"] == day]


@pytest.fixture(name="engine")
def engine_fixture():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture(name="session")
def session_fixture(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture(name="test_settings")
def test_settings_fixture():
    return Settings(
        redis_url="",
        pipeline_url="",
        alert_webhook_url="",
        llm_retry_base_delay_s=0.0,
        day_concurrency=1,
        abort_on_day_error=False,
        enable_chef_instructions=False,
        stream_poll_interval_s=0.01,
    )


@pytest.fixture(name="services")
def services_fixture(test_settings):
    sleeps = []
    services = Services(
        config=test_settings,
        cache=InMemoryCacheStore(),
        model_client=FakeModelClient(),
        pipeline=passthrough_pipeline,
        traces=TraceRecorder(InMemoryTraceStore(), max_events=test_settings.trace_max_events),
        alerts=AlertEngine(),
        sleep=sleeps.append,
    )
    services.sleeps = sleeps
    yield services
    services.alerts.shutdown()


@pytest.fixture(name="client")
def client_fixture(monkeypatch, engine, services):
    def _get_session_override():
        return Session(engine)

    monkeypatch.setattr(db_module, "engine", engine)
    monkeypatch.setattr(db_module, "get_session", _get_session_override)
    monkeypatch.setattr(main, "configure_dspy", lambda: None)
    monkeypatch.setattr(main.app.state, "services", services)

    client = TestClient(main.app)
    return client
