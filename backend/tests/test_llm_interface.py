import json
import logging
from contextlib import contextmanager
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import OperationalError

from conftest import PROFILE, SAMPLE_MEALS, TARGETS, FakeModelClient, failing
from planstream.errors import (
    LLM_FALLBACK_FAILED,
    LLM_PRIMARY_FAILED,
    LLM_RETRY_EXHAUSTED,
    LLM_VALIDATION_FAILED,
    ModelError,
)
from planstream.services.llm.chef import generate_instructions
from planstream.services.llm.dspy_client import run_with_logging
from planstream.services.llm.model_client import (
    JsonGenerator,
    JsonResponseSignature,
    ModelClient,
    ModelPrompt,
    build_day_prompt,
    parse_model_json,
)
from planstream.services.llm.prompts import CHEF_FALLBACK
from planstream.services.llm.retry import generate_with_fallback, retry_with_backoff
from planstream.storage.models import LLMCallLog


@pytest.fixture(name="audit")
def audit_fixture(monkeypatch):
    logged = []

    @contextmanager
    def fake_session():
        yield None

    monkeypatch.setattr(
        "planstream.services.llm.dspy_client.log_llm_call",
        lambda session, **kwargs: logged.append(kwargs),
    )
    monkeypatch.setattr("planstream.services.llm.dspy_client.get_session", fake_session)
    monkeypatch.setattr("planstream.services.llm.dspy_client.make_lm", lambda model: None)
    return logged


def test_run_with_logging(audit):
    def dummy_fn(input_value):
        return {"output": input_value * 2}

    result = run_with_logging(
        prompt_name="unit_test",
        prompt_version="v1",
        fn=dummy_fn,
        trace_id="trace_abc",
        input_value=2,
    )
    assert result == {"output": 4}
    assert audit[0]["prompt_name"] == "unit_test"
    assert audit[0]["trace_id"] == "trace_abc"
    assert audit[0]["succeeded"] is True


def test_run_with_logging_records_failed_call(audit):
    def broken(**_kwargs):
        raise RuntimeError("provider 503")

    with pytest.raises(RuntimeError):
        run_with_logging("unit_test", "v1", broken, model="gpt-x")
    assert audit[0]["succeeded"] is False
    assert audit[0]["model"] == "gpt-x"
    assert "provider 503" in audit[0]["output_payload"]


def test_run_with_logging_survives_audit_outage(monkeypatch):
    def broken_session():
        raise OperationalError("INSERT", {}, Exception("db down"))

    monkeypatch.setattr("planstream.services.llm.dspy_client.get_session", broken_session)
    monkeypatch.setattr("planstream.services.llm.dspy_client.make_lm", lambda model: None)
    assert run_with_logging("unit_test", "v1", lambda: "ok") == "ok"


def test_audit_rows_land_in_llm_call_log(monkeypatch, engine, session):
    from sqlmodel import Session

    from planstream.storage.repositories import list_llm_calls

    monkeypatch.setattr("planstream.services.llm.dspy_client.get_session", lambda: Session(engine))
    monkeypatch.setattr("planstream.services.llm.dspy_client.make_lm", lambda model: None)
    run_with_logging("day_plan", "v4", lambda request: {"meals": []}, model="gpt-4o-mini", trace_id="t1", request="{}")

    rows = list_llm_calls(session, "t1")
    assert len(rows) == 1
    assert rows[0].prompt_name == "day_plan"
    assert rows[0].model == "gpt-4o-mini"


def test_audit_rows_are_timestamped_in_utc():
    row = LLMCallLog(
        prompt_name="day_plan",
        prompt_version="v4",
        model="gpt-4o-mini",
        input_payload="{}",
        output_payload="{}",
        latency_ms=12,
    )
    assert row.created_at.tzinfo is not None
    assert row.created_at.utcoffset().total_seconds() == 0


def test_json_generator_passes_instructions_as_prompt_template():
    assert "prompt_template" in JsonResponseSignature.input_fields
    assert "response_json" in JsonResponseSignature.output_fields

    seen = {}

    def fake_predict(**kwargs):
        seen.update(kwargs)
        return SimpleNamespace(response_json="{}")

    gen = JsonGenerator()
    gen.predict = fake_predict
    gen.forward(instructions="plan one day", request='{"day": 1}')
    assert seen == {"prompt_template": "plan one day", "request": '{"day": 1}'}


def _prompt():
    return ModelPrompt(name="day_plan", version="v4", instructions="make a plan", request='{"day": 1}', trace_id="t1")


@pytest.fixture(name="direct_call")
def direct_call_fixture(monkeypatch):
    def fake_run_with_logging(prompt_name, prompt_version, fn, *, model=None, trace_id=None, **kwargs):
        return fn(model=model, **kwargs)

    monkeypatch.setattr("planstream.services.llm.model_client.run_with_logging", fake_run_with_logging)


class ScriptedGenerator:
    def __init__(self, outputs):
        self.outputs = list(outputs)
        self.models = []

    def __call__(self, model, instructions, request):
        self.models.append(model)
        out = self.outputs.pop(0)
        if isinstance(out, Exception):
            raise out
        return SimpleNamespace(response_json=out)


def test_model_client_selects_variant_by_attempt():
    client = ModelClient("small", "large", primary_attempts=2, generator=object())
    assert [client.model_for_attempt(a) for a in (1, 2, 3, 4)] == ["small", "small", "large", "large"]


def test_model_client_parses_fenced_json(direct_call):
    gen = ScriptedGenerator(['```json\n{"meals": []}\n```'])
    client = ModelClient("small", "large", generator=gen)
    assert client.call(_prompt(), attempt=1) == {"meals": []}
    assert gen.models == ["small"]


def test_model_client_rejects_empty_output(direct_call):
    client = ModelClient("small", "large", generator=ScriptedGenerator(["   "]))
    with pytest.raises(ModelError) as info:
        client.call(_prompt(), attempt=1)
    assert info.value.code == LLM_VALIDATION_FAILED
    assert info.value.retryable is True


def test_model_client_wraps_provider_errors(direct_call):
    auth_error = RuntimeError("invalid api key")
    auth_error.status_code = 401
    client = ModelClient("small", "large", primary_attempts=1, generator=ScriptedGenerator([auth_error, TimeoutError("slow")]))

    with pytest.raises(ModelError) as first:
        client.call(_prompt(), attempt=1)
    assert first.value.code == LLM_PRIMARY_FAILED
    assert first.value.retryable is False
    assert first.value.model == "small"

    with pytest.raises(ModelError) as second:
        client.call(_prompt(), attempt=2)
    assert second.value.code == LLM_FALLBACK_FAILED
    assert second.value.retryable is True
    assert second.value.model == "large"


def test_parse_model_json_plain_and_invalid():
    assert parse_model_json('{"a": 1}') == {"a": 1}
    with pytest.raises(ValueError):
        parse_model_json("here is your plan!")


def test_retry_with_backoff_linear_delays():
    sleeps = []
    outcomes = [failing(), failing(), lambda attempt: "ok"]

    result = retry_with_backoff(
        lambda attempt: outcomes[attempt - 1](attempt),
        max_attempts=3,
        base_delay_s=0.5,
        sleep=sleeps.append,
    )
    assert result == "ok"
    assert sleeps == [0.5, 1.0]


def test_retry_stops_on_non_retryable_error():
    attempts = []

    def fn(attempt):
        attempts.append(attempt)
        failing(LLM_VALIDATION_FAILED, retryable=False)(attempt)

    with pytest.raises(ModelError) as info:
        retry_with_backoff(fn, max_attempts=5, base_delay_s=1.0, sleep=lambda s: None)
    assert attempts == [1]
    assert info.value.code == LLM_RETRY_EXHAUSTED
    assert info.value.__cause__.code == LLM_VALIDATION_FAILED


def test_generate_with_fallback_escalates_once(caplog):
    calls = []

    class Client(FakeModelClient):
        def call(self, prompt, attempt=1):
            calls.append((attempt, self.model_for_attempt(attempt)))
            if attempt <= self.primary_attempts:
                failing()(attempt)
            return {"meals": SAMPLE_MEALS}

    sleeps = []
    with caplog.at_level(logging.WARNING):
        result = generate_with_fallback(Client(), _prompt(), base_delay_s=1.0, sleep=sleeps.append)

    assert result == {"meals": SAMPLE_MEALS}
    assert calls == [(1, "primary-model"), (2, "primary-model"), (3, "primary-model"), (4, "fallback-model")]
    assert sleeps == [1.0, 2.0]
    assert "attempt=1/3" in caplog.text
    assert LLM_PRIMARY_FAILED in caplog.text


def test_generate_with_fallback_gives_up_after_both(caplog):
    client = FakeModelClient(responses={1: failing()})
    with caplog.at_level(logging.WARNING):
        with pytest.raises(ModelError) as info:
            generate_with_fallback(client, _prompt(), base_delay_s=0.0, sleep=lambda s: None)

    assert info.value.code == LLM_FALLBACK_FAILED
    assert info.value.retryable is False
    assert [c["attempt"] for c in client.calls] == [1, 2, 3, 4]
    assert client.calls[-1]["model"] == "fallback-model"
    assert "llm.fallback_failed" in caplog.text


def test_build_day_prompt_embeds_targets_and_protein_cap():
    prompt = build_day_prompt(PROFILE, TARGETS, day=2, total_days=3, meal_targets={"dinner": 800}, protein_cap=3.0, trace_id="t")
    request = json.loads(prompt.request)
    assert request["day"] == 2
    assert request["targets"] == TARGETS
    assert request["maxProteinGrams"] == 240.0
    assert "Never exceed 3 g/kg" in prompt.instructions
    assert "day 2 of 3" in prompt.instructions
    assert "${" not in prompt.instructions


def test_chef_instructions_success_and_fallback():
    recipe = {"description": "Bright and filling.", "instructions": ["Wash produce.", "Cook rice."]}
    good = FakeModelClient(responses={None: recipe})
    out = generate_instructions(good, SAMPLE_MEALS[1], trace_id="t", base_delay_s=0.0, sleep=lambda s: None)
    assert out == recipe

    bad = FakeModelClient(responses={None: {"description": "missing steps"}})
    out = generate_instructions(bad, SAMPLE_MEALS[1], trace_id="t", base_delay_s=0.0, sleep=lambda s: None)
    assert out == CHEF_FALLBACK
    assert len(bad.calls) == bad.primary_attempts + 1


def test_chef_fallbacks_do_not_share_state():
    bad = FakeModelClient(responses={None: failing()})
    first = generate_instructions(bad, SAMPLE_MEALS[0], trace_id="t", base_delay_s=0.0, sleep=lambda s: None)
    second = generate_instructions(bad, SAMPLE_MEALS[1], trace_id="t", base_delay_s=0.0, sleep=lambda s: None)
    first["instructions"].append("extra step")
    assert second == CHEF_FALLBACK
    assert "extra step" not in CHEF_FALLBACK["instructions"]
