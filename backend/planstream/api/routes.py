from fastapi import APIRouter

from planstream.api.alerts import router as alerts_router
from planstream.api.generate import router as generate_router
from planstream.api.health import router as health_router
from planstream.api.trace import router as trace_router

router = APIRouter(prefix="/api")
router.include_router(health_router)
router.include_router(generate_router)
router.include_router(trace_router)
router.include_router(alerts_router)
