from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Identity,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, JsonDocument, PkBigInteger

CONNECTION_STATUSES = ("disconnected", "connecting", "connected", "error")
WARNING_STATUSES = ("active", "acknowledged", "resolved", "ignored")
WARNING_SEVERITIES = ("minor", "moderate", "major", "critical")
NOTIFICATION_STATUSES = ("scheduled", "sent", "failed")


class Device(Base):
    __tablename__ = "devices"
    __table_args__ = (UniqueConstraint("serial_number", name="uq_devices_serial_number"),)

    id: Mapped[int] = mapped_column(PkBigInteger, Identity(always=False), primary_key=True)
    serial_number: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    device_type: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    endpoints: Mapped[list["IngestionEndpoint"]] = relationship(back_populates="device")
    snapshot: Mapped["DeviceSnapshot | None"] = relationship(back_populates="device")


class IngestionEndpoint(Base):
    __tablename__ = "ingestion_endpoints"
    __table_args__ = (
        UniqueConstraint("code", name="uq_ingestion_endpoints_code"),
        CheckConstraint(
            "connection_status IN ('disconnected','connecting','connected','error')",
            name="ck_ingestion_endpoints_connection_status",
        ),
        CheckConstraint("qos IN (0,1,2)", name="ck_ingestion_endpoints_qos"),
    )

    id: Mapped[int] = mapped_column(PkBigInteger, Identity(always=False), primary_key=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    broker_host: Mapped[str | None] = mapped_column(String(255), nullable=True)
    broker_port: Mapped[int | None] = mapped_column(Integer, nullable=True)
    topic: Mapped[str | None] = mapped_column(String(255), nullable=True)
    qos: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0, server_default="0")
    retain: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    keepalive_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    password: Mapped[str | None] = mapped_column(String(255), nullable=True)
    client_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    device_id: Mapped[int | None] = mapped_column(
        PkBigInteger,
        ForeignKey("devices.id", ondelete="SET NULL"),
        nullable=True,
    )
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    connection_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="disconnected",
        server_default="disconnected",
    )
    reconnect_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    status_changed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    device: Mapped[Device | None] = relationship(back_populates="endpoints")


class DeviceSnapshot(Base):
    __tablename__ = "device_snapshots"
    __table_args__ = (UniqueConstraint("device_id", name="uq_device_snapshots_device_id"),)

    id: Mapped[int] = mapped_column(PkBigInteger, Identity(always=False), primary_key=True)
    device_id: Mapped[int] = mapped_column(
        PkBigInteger,
        ForeignKey("devices.id", ondelete="CASCADE"),
        nullable=False,
    )
    endpoint_id: Mapped[int | None] = mapped_column(
        PkBigInteger,
        ForeignKey("ingestion_endpoints.id", ondelete="SET NULL"),
        nullable=True,
    )
    voltage: Mapped[float | None] = mapped_column(Float, nullable=True)
    current: Mapped[float | None] = mapped_column(Float, nullable=True)
    power: Mapped[float | None] = mapped_column(Float, nullable=True)
    frequency: Mapped[float | None] = mapped_column(Float, nullable=True)
    power_factor: Mapped[float | None] = mapped_column(Float, nullable=True)
    temperature: Mapped[float | None] = mapped_column(Float, nullable=True)
    humidity: Mapped[float | None] = mapped_column(Float, nullable=True)
    leak_current: Mapped[float | None] = mapped_column(Float, nullable=True)
    machine_state: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    socket_state: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    sensor_state: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    over_voltage: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    under_voltage: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    device_ts: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    is_connected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    device: Mapped[Device] = relationship(back_populates="snapshot")


class HistoryRecord(Base):
    __tablename__ = "device_history"
    __table_args__ = (
        Index("ix_device_history_device_ingested", "device_id", "ingested_at"),
    )

    id: Mapped[int] = mapped_column(PkBigInteger, Identity(always=False), primary_key=True)
    device_id: Mapped[int] = mapped_column(
        PkBigInteger,
        ForeignKey("devices.id", ondelete="CASCADE"),
        nullable=False,
    )
    endpoint_id: Mapped[int | None] = mapped_column(
        PkBigInteger,
        ForeignKey("ingestion_endpoints.id", ondelete="SET NULL"),
        nullable=True,
    )
    voltage: Mapped[float | None] = mapped_column(Float, nullable=True)
    current: Mapped[float | None] = mapped_column(Float, nullable=True)
    power: Mapped[float | None] = mapped_column(Float, nullable=True)
    frequency: Mapped[float | None] = mapped_column(Float, nullable=True)
    power_factor: Mapped[float | None] = mapped_column(Float, nullable=True)
    temperature: Mapped[float | None] = mapped_column(Float, nullable=True)
    humidity: Mapped[float | None] = mapped_column(Float, nullable=True)
    leak_current: Mapped[float | None] = mapped_column(Float, nullable=True)
    machine_state: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    socket_state: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sensor_state: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    over_voltage: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    under_voltage: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    device_ts: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    ingested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class RawMessage(Base):
    __tablename__ = "device_raw_messages"
    __table_args__ = (
        Index("ix_device_raw_messages_device_received", "device_id", "received_at"),
    )

    id: Mapped[int] = mapped_column(PkBigInteger, Identity(always=False), primary_key=True)
    device_id: Mapped[int] = mapped_column(
        PkBigInteger,
        ForeignKey("devices.id", ondelete="CASCADE"),
        nullable=False,
    )
    endpoint_id: Mapped[int | None] = mapped_column(
        PkBigInteger,
        ForeignKey("ingestion_endpoints.id", ondelete="SET NULL"),
        nullable=True,
    )
    payload_json: Mapped[dict] = mapped_column(JsonDocument, nullable=False, default=dict)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class DeviceWarning(Base):
    __tablename__ = "device_warnings"
    __table_args__ = (
        CheckConstraint(
            "status IN ('active','acknowledged','resolved','ignored')",
            name="ck_device_warnings_status",
        ),
        CheckConstraint(
            "severity IN ('minor','moderate','major','critical')",
            name="ck_device_warnings_severity",
        ),
        Index(
            "uq_device_warnings_active_type",
            "device_id",
            "warning_type",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("ix_device_warnings_status_resolved", "status", "resolved_at"),
    )

    id: Mapped[int] = mapped_column(PkBigInteger, Identity(always=False), primary_key=True)
    device_id: Mapped[int] = mapped_column(
        PkBigInteger,
        ForeignKey("devices.id", ondelete="CASCADE"),
        nullable=False,
    )
    device_type: Mapped[str] = mapped_column(String(64), nullable=False)
    device_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    warning_type: Mapped[str] = mapped_column(String(64), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    measured_value: Mapped[float] = mapped_column(Float, nullable=False)
    threshold_value: Mapped[float] = mapped_column(Float, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", server_default="active")
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    notifications: Mapped[list["WarningNotification"]] = relationship(
        back_populates="warning",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="WarningNotification.level",
    )


class WarningNotification(Base):
    __tablename__ = "warning_notifications"
    __table_args__ = (
        UniqueConstraint("warning_id", "level", name="uq_warning_notifications_warning_level"),
        CheckConstraint(
            "status IN ('scheduled','sent','failed')",
            name="ck_warning_notifications_status",
        ),
        Index("ix_warning_notifications_status_send_time", "status", "send_time"),
    )

    id: Mapped[int] = mapped_column(PkBigInteger, Identity(always=False), primary_key=True)
    warning_id: Mapped[int] = mapped_column(
        PkBigInteger,
        ForeignKey("device_warnings.id", ondelete="CASCADE"),
        nullable=False,
    )
    level: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    send_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="scheduled",
        server_default="scheduled",
    )
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_text: Mapped[str | None] = mapped_column(Text, nullable=True)

    warning: Mapped[DeviceWarning] = relationship(back_populates="notifications")
