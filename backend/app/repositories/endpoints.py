from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.db.models import Device, IngestionEndpoint


def list_enabled_endpoints(db: Session) -> list[IngestionEndpoint]:
    return list(
        db.scalars(
            select(IngestionEndpoint)
            .where(IngestionEndpoint.enabled.is_(True))
            .order_by(IngestionEndpoint.code.asc())
        )
    )


def get_endpoint(db: Session, endpoint_id: int) -> IngestionEndpoint | None:
    return db.get(IngestionEndpoint, endpoint_id)


def get_device(db: Session, device_id: int) -> Device | None:
    return db.get(Device, device_id)


def update_endpoint_status(
    db: Session,
    *,
    endpoint_id: int,
    status: str,
    reconnect_attempts: int,
    last_error: str | None,
    changed_at: datetime,
) -> None:
    db.execute(
        update(IngestionEndpoint)
        .where(IngestionEndpoint.id == endpoint_id)
        .values(
            connection_status=status,
            reconnect_attempts=reconnect_attempts,
            last_error=last_error,
            status_changed_at=changed_at,
        )
    )
    db.commit()
