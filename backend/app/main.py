import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from sqlalchemy.orm import Session

from app.api.devices import router as devices_router
from app.api.endpoints import router as endpoints_router
from app.api.notifications import router as notifications_router
from app.api.warnings import router as warnings_router
from app.core.config import get_settings
from app.core.logging import configure_logging
from app.db.session import SessionLocal, check_db_connection, get_db
from app.services.connection_manager import ConnectionManager
from app.services.escalation import EscalationService
from app.services.ingest_pipeline import IngestPipelineService
from app.services.notifier import build_notifier
from app.services.telemetry_store import TelemetryStoreService
from app.services.warning_lifecycle import WarningLifecycleService

logger = logging.getLogger("app.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    escalation_service = EscalationService(
        settings=settings,
        session_factory=SessionLocal,
        notifier=build_notifier(settings),
    )
    telemetry_store = TelemetryStoreService(session_factory=SessionLocal)
    warning_lifecycle_service = WarningLifecycleService(
        settings=settings,
        session_factory=SessionLocal,
        escalation=escalation_service,
    )
    ingest_pipeline = IngestPipelineService(
        settings=settings,
        session_factory=SessionLocal,
        telemetry_store=telemetry_store,
        warning_lifecycle=warning_lifecycle_service,
    )
    connection_manager = ConnectionManager(
        settings=settings,
        session_factory=SessionLocal,
        ingest_pipeline=ingest_pipeline,
    )

    app.state.settings = settings
    app.state.escalation_service = escalation_service
    app.state.telemetry_store = telemetry_store
    app.state.warning_lifecycle_service = warning_lifecycle_service
    app.state.ingest_pipeline = ingest_pipeline
    app.state.connection_manager = connection_manager

    escalation_service.start()
    try:
        connection_manager.initialize_all()
    except Exception:
        logger.exception("endpoint initialization failed")
    try:
        yield
    finally:
        connection_manager.shutdown()
        escalation_service.stop()


app = FastAPI(title="IoMT Monitor Backend", lifespan=lifespan)
app.include_router(endpoints_router)
app.include_router(devices_router)
app.include_router(warnings_router)
app.include_router(notifications_router)


@app.get("/health")
def health():
    return {"status": "ok", "service": "backend"}


@app.get("/status")
def status(request: Request, db: Session = Depends(get_db)):
    db_ok, db_error = check_db_connection(db)
    connection_manager: ConnectionManager | None = getattr(request.app.state, "connection_manager", None)
    escalation_service: EscalationService | None = getattr(request.app.state, "escalation_service", None)
    telemetry_store: TelemetryStoreService | None = getattr(request.app.state, "telemetry_store", None)
    ingest_pipeline: IngestPipelineService | None = getattr(request.app.state, "ingest_pipeline", None)

    return {
        "status": "ok" if db_ok else "degraded",
        "database": {"ok": db_ok, "error": db_error},
        "endpoints": connection_manager.get_summary() if connection_manager else None,
        "escalation": escalation_service.get_status_snapshot() if escalation_service else None,
        "telemetry": telemetry_store.get_status_snapshot() if telemetry_store else None,
        "ingest": ingest_pipeline.get_status_snapshot() if ingest_pipeline else None,
    }
