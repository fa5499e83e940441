import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI
from pydantic import BaseModel, ConfigDict

from careroutine import get_flow, get_settings
from shared.contracts.enums import NotificationKind
from shared.log import configure_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    tick_scheduler = get_flow().tick_scheduler
    if settings.scheduler_enabled:
        tick_scheduler.start()
    else:
        logger.info("Scheduler disabled via SCHEDULER_ENABLED")
    try:
        yield
    finally:
        get_flow().close()


app = FastAPI(title="scheduler", lifespan=lifespan)


class TickRequest(BaseModel):
    at: datetime | None = None


class SweepDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    kind: NotificationKind
    window_start: datetime
    window_end: datetime
    routines: int
    sent: int
    failed: int
    skipped: int
    error: str | None = None


class TickDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    at: datetime
    skipped: bool
    sweeps: list[SweepDTO]


@app.get("/health")
def health() -> dict[str, str | bool | int]:
    flow = get_flow()
    return {
        "status": "ok",
        "service": "scheduler",
        "scheduler_running": flow.tick_scheduler.running,
        "tick_interval_seconds": flow.tick_scheduler.interval_seconds,
    }


@app.post("/jobs/tick", response_model=TickDTO)
def tick(payload: TickRequest | None = None) -> TickDTO:
    report = get_flow().run_scheduler(payload.at if payload else None)
    return TickDTO.model_validate(report)
