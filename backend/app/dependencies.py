from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

from app.core.config import Settings

if TYPE_CHECKING:
    from app.services.connection_manager import ConnectionManager
    from app.services.escalation import EscalationService
    from app.services.warning_lifecycle import WarningLifecycleService


def get_settings_from_app(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        raise HTTPException(status_code=503, detail="Application settings are not initialized")
    return settings


def get_connection_manager(request: Request) -> "ConnectionManager":
    service = getattr(request.app.state, "connection_manager", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Connection manager is not initialized")
    return service


def get_escalation_service(request: Request) -> "EscalationService":
    service = getattr(request.app.state, "escalation_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Escalation service is not initialized")
    return service


def get_warning_lifecycle_service(request: Request) -> "WarningLifecycleService":
    service = getattr(request.app.state, "warning_lifecycle_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Warning lifecycle service is not initialized")
    return service
