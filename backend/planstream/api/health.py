from fastapi import APIRouter

from planstream.config import settings

router = APIRouter()


@router.get("/health")
def health() -> dict:
    return {"status": "ok", "env": settings.env}
