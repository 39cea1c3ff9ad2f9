from typing import Optional

from fastapi import APIRouter, Depends, Query

from planstream.api.deps import get_services
from planstream.services.container import Services

router = APIRouter(prefix="/alerts")


@router.get("/recent")
def recent_alerts(
    limit: int = Query(default=50, ge=1, le=500),
    level: Optional[str] = None,
    services: Services = Depends(get_services),
) -> dict:
    alerts = services.alerts.recent(limit=limit, level=level)
    return {"alerts": alerts, "count": len(alerts)}


@router.get("/rate-limits")
def rate_limits(services: Services = Depends(get_services)) -> dict:
    return services.alerts.rate_limit_stats()
