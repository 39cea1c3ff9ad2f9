import json
import logging
import threading

import httpx
import pytest
import respx

from planstream.services.alerting.engine import (
    CRITICAL,
    INFO,
    MARKET_RUN,
    SYSTEM,
    WARNING,
    AlertEngine,
    WebhookNotifier,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(clock):
    alerts = AlertEngine(window_s=60, max_per_window=5, clock=clock)
    yield alerts
    alerts.shutdown()


def test_burst_is_capped_per_metric(engine):
    sent = [engine.emit(WARNING, "fallback_rate", {"i": i}) for i in range(20)]
    assert len([a for a in sent if a]) == 5
    assert engine.emit(WARNING, "protein_deviation") is not None
    stats = engine.rate_limit_stats()
    assert stats["metrics"]["fallback_rate"] == {"inWindow": 5, "suppressed": 15}


def test_critical_alerts_are_never_suppressed(engine):
    for _ in range(5):
        engine.emit(WARNING, "pipeline_failure")
    sent = [engine.emit(CRITICAL, "pipeline_failure") for _ in range(10)]
    assert all(sent)
    assert len(engine.recent(level=CRITICAL)) == 10


def test_window_slides(engine, clock):
    for _ in range(5):
        assert engine.emit(INFO, "hotpath_miss")
    assert engine.emit(INFO, "hotpath_miss") is None
    clock.now += 30
    assert engine.emit(INFO, "hotpath_miss") is None
    clock.now += 31
    assert engine.emit(INFO, "hotpath_miss") is not None


def test_configure_and_clear_rate_limits(engine):
    engine.configure_rate_limiting(max_per_window=1)
    assert engine.emit(WARNING, "fallback_rate")
    assert engine.emit(WARNING, "fallback_rate") is None
    engine.clear_rate_limits()
    assert engine.emit(WARNING, "fallback_rate")
    assert engine.rate_limit_stats()["maxPerWindow"] == 1


def test_alert_shape_and_structured_log_line(engine, caplog):
    with caplog.at_level(logging.INFO, logger="planstream.services.alerting.engine"):
        alert = engine.emit(WARNING, "market_run_failure", {"ingredientKey": "saffron"}, trace_id="trace_1")
    assert alert["category"] == MARKET_RUN
    assert alert["traceId"] == "trace_1"
    assert alert["source"] == "planstream"
    assert alert["version"] == "1.0"
    assert alert["id"].startswith("alert_")

    line = json.loads(caplog.records[-1].getMessage())
    assert line["type"] == "ALERT"
    assert line["metric"] == "market_run_failure"
    assert engine.emit(INFO, "something_new")["category"] == SYSTEM


@pytest.mark.parametrize(
    "metric,value,expected",
    [
        ("calorie_deviation", 5, None),
        ("calorie_deviation", 12, WARNING),
        ("calorie_deviation", 20, CRITICAL),
        ("reconciliation_factor", 1.0, None),
        ("reconciliation_factor", 0.6, WARNING),
        ("reconciliation_factor", 0.4, CRITICAL),
        ("reconciliation_factor", 2.5, CRITICAL),
        ("market_run_success_rate", 95, None),
        ("market_run_success_rate", 60, WARNING),
        ("day_failure_rate", 0, None),
        ("day_failure_rate", 33.3, WARNING),
        ("day_failure_rate", 100, CRITICAL),
        ("unknown_metric", 1e9, None),
    ],
)
def test_check_threshold(engine, metric, value, expected):
    alert = engine.check_threshold(metric, value)
    if expected is None:
        assert alert is None
    else:
        assert alert["level"] == expected
        assert alert["context"]["value"] == value


def test_calorie_deviation(engine):
    alert = engine.check_calorie_deviation(2000, 2400, {"dayNumber": 1})
    assert alert["level"] == CRITICAL
    assert alert["context"]["deviationPercent"] == 16.67
    assert alert["context"]["dayNumber"] == 1
    assert engine.check_calorie_deviation(2350, 2400) is None
    assert engine.check_calorie_deviation(100, 0) is None


def test_validation_result(engine):
    alerts = engine.check_validation_result({"critical": ["no meals"], "warnings": [f"w{i}" for i in range(7)]})
    assert [a["level"] for a in alerts] == [CRITICAL, WARNING]
    assert alerts[1]["context"]["count"] == 7
    assert engine.check_validation_result({"warnings": ["only one"]}) == []


def test_failing_hook_does_not_affect_others(engine):
    received = []

    def broken(alert):
        raise RuntimeError("hook down")

    engine.register_hook(broken)
    engine.register_hook(received.append, name="collector")
    alert = engine.emit(CRITICAL, "pipeline_failure")
    assert alert is not None
    assert engine.flush()
    assert [a["id"] for a in received] == [alert["id"]]


def test_duplicate_hook_name_rejected(engine):
    engine.register_hook(lambda alert: None, name="dup")
    with pytest.raises(ValueError):
        engine.register_hook(lambda alert: None, name="dup")
    assert engine.unregister_hook("dup") is True
    assert engine.unregister_hook("dup") is False


def test_slow_hook_never_blocks_emit_and_drops_when_full(clock):
    engine = AlertEngine(clock=clock, hook_queue_size=1)
    gate = threading.Event()
    engine.register_hook(lambda alert: gate.wait(5), name="slow")
    try:
        sent = [engine.emit(CRITICAL, "system_error", {"i": i}) for i in range(5)]
        assert all(sent)
    finally:
        gate.set()
        engine.shutdown()


def test_recent_is_newest_first(engine):
    for i in range(3):
        engine.emit(INFO, f"m{i}")
    assert [a["metric"] for a in engine.recent(limit=2)] == ["m2", "m1"]


@respx.mock
def test_webhook_notifier_posts_alert():
    route = respx.post("https://hooks.example.com/alerts").mock(return_value=httpx.Response(204))
    WebhookNotifier("https://hooks.example.com/alerts")({"id": "alert_1", "level": CRITICAL})
    assert route.called
    assert json.loads(route.calls.last.request.content) == {"id": "alert_1", "level": CRITICAL}


@respx.mock
def test_webhook_notifier_raises_on_error_status():
    respx.post("https://hooks.example.com/alerts").mock(return_value=httpx.Response(500))
    with pytest.raises(httpx.HTTPStatusError):
        WebhookNotifier("https://hooks.example.com/alerts")({"id": "alert_2"})
