from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status

from app.core.errors import WarningNotFoundError, WarningStateError
from app.dependencies import get_escalation_service, get_warning_lifecycle_service
from app.schemas.warnings import (
    WarningNotificationResponse,
    WarningResponse,
    WarningStatsResponse,
    WarningStatusChangeRequest,
    WarningStatusRequest,
)
from app.services.escalation import EscalationService
from app.services.warning_lifecycle import WarningLifecycleService


router = APIRouter(prefix="/api", tags=["warnings"])


@router.get("/warnings/active", response_model=list[WarningResponse])
def get_active_warnings(
    device_id: int | None = None,
    service: WarningLifecycleService = Depends(get_warning_lifecycle_service),
) -> list[WarningResponse]:
    return [WarningResponse.model_validate(warning) for warning in service.list_active(device_id=device_id)]


@router.get("/warnings/stats", response_model=WarningStatsResponse)
def get_warning_stats(
    since: datetime | None = None,
    service: WarningLifecycleService = Depends(get_warning_lifecycle_service),
) -> WarningStatsResponse:
    return WarningStatsResponse.model_validate(service.get_stats(since=since))


@router.post("/warnings/{warning_id}/acknowledge", response_model=WarningResponse)
def post_warning_acknowledge(
    warning_id: int,
    payload: WarningStatusRequest | None = None,
    service: WarningLifecycleService = Depends(get_warning_lifecycle_service),
) -> WarningResponse:
    return _change_status(service, warning_id, "acknowledged", payload.notes if payload is not None else None)


@router.post("/warnings/{warning_id}/status", response_model=WarningResponse)
def post_warning_status(
    warning_id: int,
    payload: WarningStatusChangeRequest,
    service: WarningLifecycleService = Depends(get_warning_lifecycle_service),
) -> WarningResponse:
    return _change_status(service, warning_id, payload.status, payload.notes)


@router.get("/warnings/{warning_id}/notifications", response_model=list[WarningNotificationResponse])
def get_warning_notifications(
    warning_id: int,
    service: EscalationService = Depends(get_escalation_service),
) -> list[WarningNotificationResponse]:
    try:
        entries = service.list_notifications(warning_id)
    except WarningNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Warning not found")
    return [WarningNotificationResponse.model_validate(entry) for entry in entries]


def _change_status(
    service: WarningLifecycleService,
    warning_id: int,
    target: str,
    notes: str | None,
) -> WarningResponse:
    try:
        warning = service.set_status(warning_id, target, notes=notes)
    except WarningNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Warning not found")
    except WarningStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return WarningResponse.model_validate(warning)
