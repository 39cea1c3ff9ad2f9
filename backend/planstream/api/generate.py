"""SSE endpoint for full plan generation.

POST /plan/generate-full-plan validates the body, then streams the run. The
orchestrator runs in the default executor and pushes frames into a QueueSink;
the response generator drains it. When the client goes away the sink is
marked disconnected: later writes are dropped and the run still finishes its
bookkeeping (trace, alerts).
"""

import asyncio
import queue

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from planstream.api.deps import get_services
from planstream.errors import HANDLER_CRASHED
from planstream.logging import get_logger
from planstream.schemas.plan import GeneratePlanRequest
from planstream.services.container import Services
from planstream.services.orchestration.orchestrator import PlanRequest, new_trace_id, resolve_day_count
from planstream.services.streaming.emitter import QueueSink

router = APIRouter()
logger = get_logger(__name__)

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}


def _log_run_failure(future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.error("plan.worker_crashed code=%s error=%s", HANDLER_CRASHED, exc, exc_info=exc)


@router.post("/plan/generate-full-plan")
async def generate_full_plan(body: GeneratePlanRequest, services: Services = Depends(get_services)):
    try:
        days = resolve_day_count(body.days, body.profile, services.config.max_days)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    trace_id = new_trace_id()
    plan_request = PlanRequest(
        profile=body.profile,
        targets=body.targets,
        days=days,
        meal_targets=body.meal_targets,
    )
    sink = QueueSink()
    logger.info("plan.request trace=%s days=%s", trace_id, days)
    future = asyncio.get_running_loop().run_in_executor(
        None,
        services.orchestrator().run,
        plan_request,
        sink,
        trace_id,
    )
    future.add_done_callback(_log_run_failure)

    async def generate():
        poll_interval = services.config.stream_poll_interval_s
        try:
            while True:
                try:
                    frame = sink.get_nowait()
                except queue.Empty:
                    await asyncio.sleep(poll_interval)
                    continue
                if frame is None:
                    break
                yield frame
        finally:
            sink.disconnect()

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={**SSE_HEADERS, "X-Trace-Id": trace_id},
    )
