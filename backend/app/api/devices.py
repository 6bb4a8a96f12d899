from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.core.config import Settings
from app.db.session import get_db
from app.dependencies import get_settings_from_app, get_warning_lifecycle_service
from app.repositories.telemetry import get_snapshot
from app.schemas.telemetry import DeviceSnapshotResponse
from app.schemas.warnings import WarningResponse
from app.services.warning_lifecycle import WarningLifecycleService


router = APIRouter(prefix="/api", tags=["devices"])


@router.get("/devices/{device_id}/snapshot", response_model=DeviceSnapshotResponse)
def get_device_snapshot(
    device_id: int,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings_from_app),
) -> DeviceSnapshotResponse:
    snapshot = get_snapshot(db, device_id=device_id)
    if snapshot is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No snapshot for device")

    response = DeviceSnapshotResponse.model_validate(snapshot)
    last_seen = _to_utc(snapshot.last_seen_at)
    age_seconds = max(0, int((datetime.now(timezone.utc) - last_seen).total_seconds()))
    response.last_seen_seconds = age_seconds
    response.status = "stale" if age_seconds > settings.live_stale_seconds else "online"
    return response


@router.get("/devices/{device_id}/warnings", response_model=list[WarningResponse])
def get_device_warnings(
    device_id: int,
    limit: int = Query(default=100, ge=1, le=1000),
    service: WarningLifecycleService = Depends(get_warning_lifecycle_service),
) -> list[WarningResponse]:
    return [WarningResponse.model_validate(warning) for warning in service.list_for_device(device_id, limit=limit)]


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
