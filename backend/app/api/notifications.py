from __future__ import annotations

from fastapi import APIRouter, Depends

from app.dependencies import get_escalation_service
from app.schemas.warnings import QueueStatusResponse, SweepResponse
from app.services.escalation import EscalationService


router = APIRouter(prefix="/api", tags=["notifications"])


@router.post("/notifications/sweep", response_model=SweepResponse)
def post_notifications_sweep(
    service: EscalationService = Depends(get_escalation_service),
) -> SweepResponse:
    return SweepResponse.model_validate(service.sweep().to_dict())


@router.get("/notifications/queue", response_model=QueueStatusResponse)
def get_notifications_queue(
    service: EscalationService = Depends(get_escalation_service),
) -> QueueStatusResponse:
    return QueueStatusResponse.model_validate(service.get_queue_status())
