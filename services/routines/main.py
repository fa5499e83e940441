import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from careroutine import get_flow, get_settings
from services.routines.emergency import EmergencyAlerts
from services.routines.errors import ActivityValidationError, ChannelError, StoreError
from services.routines.lifecycle import ActivityLifecycleManager
from shared.contracts.enums import ActivityKind
from shared.contracts.models import (
    Activity,
    ActivityCreate,
    ActivityPatch,
    EmergencyAlert,
    EmergencyCancelled,
    EmergencyRequest,
)
from shared.log import configure_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(get_settings().log_level)
    try:
        yield
    finally:
        get_flow().close()


app = FastAPI(title="routines", lifespan=lifespan)


class CaregiverAssignment(BaseModel):
    caregiver_id: str = Field(min_length=1, max_length=64)


class ActivityListDTO(BaseModel):
    results: int
    activities: list[Activity]


def get_lifecycle() -> ActivityLifecycleManager:
    return get_flow().lifecycle


def get_emergency_alerts() -> EmergencyAlerts:
    return get_flow().emergency


@app.exception_handler(ActivityValidationError)
def handle_validation_error(request: Request, exc: ActivityValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc), "errors": exc.errors})


@app.exception_handler(StoreError)
def handle_store_error(request: Request, exc: StoreError) -> JSONResponse:
    logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "routine store unavailable"})


@app.exception_handler(ChannelError)
def handle_channel_error(request: Request, exc: ChannelError) -> JSONResponse:
    logger.error("Channel failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=502, content={"detail": "notification channel unavailable"})


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok", "service": "routines"}


@app.post("/routines/{dependent_id}/activities", status_code=201, response_model=Activity)
def create_activity(
    dependent_id: str,
    payload: ActivityCreate,
    caregiver_id: str | None = None,
    lifecycle: ActivityLifecycleManager = Depends(get_lifecycle),
) -> Activity:
    return lifecycle.create_activity(dependent_id, payload, caregiver_id=caregiver_id)


@app.get("/routines/{dependent_id}/activities", response_model=ActivityListDTO)
def list_activities(
    dependent_id: str,
    kind: ActivityKind | None = None,
    lifecycle: ActivityLifecycleManager = Depends(get_lifecycle),
) -> ActivityListDTO:
    activities = lifecycle.list_activities(dependent_id, kind=kind)
    return ActivityListDTO(results=len(activities), activities=activities)


@app.delete("/routines/{dependent_id}/activities", status_code=204)
def delete_all_activities(
    dependent_id: str,
    lifecycle: ActivityLifecycleManager = Depends(get_lifecycle),
) -> Response:
    if not lifecycle.delete_all_activities(dependent_id):
        raise HTTPException(status_code=404, detail="routine not found")
    return Response(status_code=204)


@app.get("/routines/{dependent_id}/activities/{activity_id}", response_model=Activity)
def get_activity(
    dependent_id: str,
    activity_id: str,
    lifecycle: ActivityLifecycleManager = Depends(get_lifecycle),
) -> Activity:
    activity = lifecycle.get_activity(dependent_id, activity_id)
    if activity is None:
        raise HTTPException(status_code=404, detail="activity not found")
    return activity


@app.put("/routines/{dependent_id}/activities/{activity_id}", response_model=Activity)
def update_activity(
    dependent_id: str,
    activity_id: str,
    payload: ActivityPatch,
    lifecycle: ActivityLifecycleManager = Depends(get_lifecycle),
) -> Activity:
    activity = lifecycle.update_activity(dependent_id, activity_id, payload)
    if activity is None:
        raise HTTPException(status_code=404, detail="activity not found")
    return activity


@app.delete("/routines/{dependent_id}/activities/{activity_id}", status_code=204)
def delete_activity(
    dependent_id: str,
    activity_id: str,
    lifecycle: ActivityLifecycleManager = Depends(get_lifecycle),
) -> Response:
    if not lifecycle.delete_activity(dependent_id, activity_id):
        raise HTTPException(status_code=404, detail="activity not found")
    return Response(status_code=204)


@app.put("/routines/{dependent_id}/caregiver")
def assign_caregiver(
    dependent_id: str,
    payload: CaregiverAssignment,
    lifecycle: ActivityLifecycleManager = Depends(get_lifecycle),
) -> dict[str, str]:
    if not lifecycle.assign_caregiver(dependent_id, payload.caregiver_id):
        raise HTTPException(status_code=404, detail="routine not found")
    return {"dependent_id": dependent_id, "caregiver_id": payload.caregiver_id}


@app.get("/routines/{dependent_id}/log")
def activity_log(
    dependent_id: str,
    lifecycle: ActivityLifecycleManager = Depends(get_lifecycle),
) -> list[dict[str, Any]]:
    return [entry.model_dump(mode="json") for entry in lifecycle.activity_log(dependent_id)]


@app.post("/emergency/alert", response_model=EmergencyAlert)
def emergency_alert(
    payload: EmergencyRequest,
    alerts: EmergencyAlerts = Depends(get_emergency_alerts),
) -> EmergencyAlert:
    return alerts.raise_alert(payload)


@app.post("/emergency/cancel", response_model=EmergencyCancelled)
def cancel_emergency_alert(
    payload: EmergencyRequest,
    alerts: EmergencyAlerts = Depends(get_emergency_alerts),
) -> EmergencyCancelled:
    return alerts.cancel_alert(payload)
