from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from planstream.api.routes import router as api_router
from planstream.config import settings
from planstream.logging import configure_logging, get_logger
from planstream.services.container import build_services
from planstream.services.llm.dspy_client import configure_dspy
from planstream.storage.db import create_db_and_tables

app = FastAPI(title="Planstream API")
logger = get_logger(__name__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Trace-Id"],
)

app.state.services = build_services(settings)


@app.on_event("startup")
def on_startup() -> None:
    configure_logging(settings.log_level)
    logger.info("startup: configuring services")
    configure_dspy()
    create_db_and_tables()


@app.on_event("shutdown")
def on_shutdown() -> None:
    app.state.services.alerts.shutdown()


app.include_router(api_router)
