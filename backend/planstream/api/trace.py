from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from planstream.api.deps import get_services
from planstream.logging import get_logger
from planstream.schemas.plan import TraceAction
from planstream.services.container import Services

router = APIRouter(prefix="/trace")
logger = get_logger(__name__)


@router.get("/recent")
def list_recent_traces(
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    status: Optional[str] = None,
    services: Services = Depends(get_services),
) -> dict:
    traces = services.traces.list_recent(limit=limit, offset=offset, status=status)
    return {"traces": traces, "count": len(traces)}


@router.get("/stats")
def trace_stats(services: Services = Depends(get_services)) -> dict:
    return services.traces.stats()


@router.get("/{trace_id}")
def get_trace(trace_id: str, summary: bool = False, services: Services = Depends(get_services)) -> dict:
    trace = services.traces.summary(trace_id) if summary else services.traces.get(trace_id)
    if trace is None:
        raise HTTPException(status_code=404, detail="Trace not found")
    return trace


@router.post("")
def trace_action(body: TraceAction, services: Services = Depends(get_services)) -> dict:
    traces = services.traces
    if body.action == "create":
        if not body.trace_id:
            raise HTTPException(status_code=400, detail="traceId is required")
        trace = traces.create(body.trace_id, body.metadata)
        return {"ok": True, "traceId": trace["traceId"]}

    if not body.trace_id or traces.get(body.trace_id) is None:
        raise HTTPException(status_code=404, detail="Trace not found")
    if body.action == "event":
        if not body.event_type:
            raise HTTPException(status_code=400, detail="eventType is required")
        return {"ok": traces.add_event(body.trace_id, body.event_type, body.data)}
    trace = traces.complete(body.trace_id, body.status or "success", body.result)
    return {"ok": True, "summary": trace["summary"] if trace else None}


@router.delete("/{trace_id}")
def delete_trace(trace_id: str, services: Services = Depends(get_services)) -> dict:
    if not services.traces.delete(trace_id):
        raise HTTPException(status_code=404, detail="Trace not found")
    logger.info("trace.deleted trace=%s", trace_id)
    return {"ok": True}
