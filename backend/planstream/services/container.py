import time
from dataclasses import dataclass
from typing import Callable

from planstream.config import Settings, settings as default_settings
from planstream.logging import get_logger
from planstream.services.alerting.engine import AlertEngine, WebhookNotifier
from planstream.services.cache.store import CacheStore, build_cache_store
from planstream.services.llm.model_client import ModelClient
from planstream.services.orchestration.orchestrator import PlanOrchestrator
from planstream.services.pipeline.client import DayPipeline, build_pipeline
from planstream.services.tracing.recorder import TraceRecorder
from planstream.services.tracing.store import InMemoryTraceStore

logger = get_logger(__name__)


@dataclass
class Services:
    """Process-wide collaborators shared by every run."""

    config: Settings
    cache: CacheStore
    model_client: ModelClient
    pipeline: DayPipeline
    traces: TraceRecorder
    alerts: AlertEngine
    sleep: Callable[[float], None] = time.sleep

    def orchestrator(self) -> PlanOrchestrator:
        return PlanOrchestrator(
            cache=self.cache,
            model_client=self.model_client,
            pipeline=self.pipeline,
            traces=self.traces,
            alerts=self.alerts,
            config=self.config,
            sleep=self.sleep,
        )


def build_services(config: Settings = default_settings) -> Services:
    alerts = AlertEngine(
        window_s=config.alert_rate_window_s,
        max_per_window=config.alert_max_per_window,
        buffer_size=config.alert_buffer_size,
        hook_queue_size=config.alert_hook_queue_size,
    )
    if config.alert_webhook_url:
        alerts.register_hook(WebhookNotifier(config.alert_webhook_url), name="webhook")

    traces = TraceRecorder(
        InMemoryTraceStore(max_runs=config.trace_max_runs, ttl_s=config.trace_ttl_hours * 3600),
        max_events=config.trace_max_events,
    )
    model_client = ModelClient(
        primary=config.llm_model_primary,
        fallback=config.llm_model_fallback,
        primary_attempts=config.llm_primary_attempts,
    )
    services = Services(
        config=config,
        cache=build_cache_store(config.redis_url),
        model_client=model_client,
        pipeline=build_pipeline(config.pipeline_url, config.pipeline_timeout_s),
        traces=traces,
        alerts=alerts,
    )
    logger.info(
        "services.built cache=%s pipeline=%s webhook=%s",
        type(services.cache).__name__,
        "http" if config.pipeline_url else "passthrough",
        bool(config.alert_webhook_url),
    )
    return services
