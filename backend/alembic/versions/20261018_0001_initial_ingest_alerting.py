"""initial ingest and alerting schema

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 09:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "20261018_0001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _measurement_columns() -> list[sa.Column]:
    return [
        sa.Column("voltage", sa.Float(), nullable=True),
        sa.Column("current", sa.Float(), nullable=True),
        sa.Column("power", sa.Float(), nullable=True),
        sa.Column("frequency", sa.Float(), nullable=True),
        sa.Column("power_factor", sa.Float(), nullable=True),
        sa.Column("temperature", sa.Float(), nullable=True),
        sa.Column("humidity", sa.Float(), nullable=True),
        sa.Column("leak_current", sa.Float(), nullable=True),
        sa.Column("machine_state", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("socket_state", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("sensor_state", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("over_voltage", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("under_voltage", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("device_ts", sa.DateTime(timezone=False), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "devices",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("serial_number", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("device_type", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("serial_number", name="uq_devices_serial_number"),
    )

    op.create_table(
        "ingestion_endpoints",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("broker_host", sa.String(length=255), nullable=True),
        sa.Column("broker_port", sa.Integer(), nullable=True),
        sa.Column("topic", sa.String(length=255), nullable=True),
        sa.Column("qos", sa.SmallInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column("retain", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("keepalive_seconds", sa.Integer(), nullable=True),
        sa.Column("username", sa.String(length=255), nullable=True),
        sa.Column("password", sa.String(length=255), nullable=True),
        sa.Column("client_id", sa.String(length=128), nullable=True),
        sa.Column("device_id", sa.BigInteger(), nullable=True),
        sa.Column("enabled", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column(
            "connection_status",
            sa.String(length=16),
            server_default=sa.text("'disconnected'"),
            nullable=False,
        ),
        sa.Column("reconnect_attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("status_changed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "connection_status IN ('disconnected','connecting','connected','error')",
            name="ck_ingestion_endpoints_connection_status",
        ),
        sa.CheckConstraint("qos IN (0,1,2)", name="ck_ingestion_endpoints_qos"),
        sa.ForeignKeyConstraint(["device_id"], ["devices.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code", name="uq_ingestion_endpoints_code"),
    )

    op.create_table(
        "device_snapshots",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("device_id", sa.BigInteger(), nullable=False),
        sa.Column("endpoint_id", sa.BigInteger(), nullable=True),
        *_measurement_columns(),
        sa.Column("is_connected", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["device_id"], ["devices.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["endpoint_id"], ["ingestion_endpoints.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("device_id", name="uq_device_snapshots_device_id"),
    )

    op.create_table(
        "device_history",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("device_id", sa.BigInteger(), nullable=False),
        sa.Column("endpoint_id", sa.BigInteger(), nullable=True),
        *_measurement_columns(),
        sa.Column("ingested_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["device_id"], ["devices.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["endpoint_id"], ["ingestion_endpoints.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_device_history_device_ingested", "device_history", ["device_id", "ingested_at"])

    op.create_table(
        "device_raw_messages",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("device_id", sa.BigInteger(), nullable=False),
        sa.Column("endpoint_id", sa.BigInteger(), nullable=True),
        sa.Column("payload_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["device_id"], ["devices.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["endpoint_id"], ["ingestion_endpoints.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_device_raw_messages_device_received",
        "device_raw_messages",
        ["device_id", "received_at"],
    )

    op.create_table(
        "device_warnings",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("device_id", sa.BigInteger(), nullable=False),
        sa.Column("device_type", sa.String(length=64), nullable=False),
        sa.Column("device_name", sa.String(length=255), nullable=True),
        sa.Column("warning_type", sa.String(length=64), nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False),
        sa.Column("measured_value", sa.Float(), nullable=False),
        sa.Column("threshold_value", sa.Float(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=16), server_default=sa.text("'active'"), nullable=False),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('active','acknowledged','resolved','ignored')",
            name="ck_device_warnings_status",
        ),
        sa.CheckConstraint(
            "severity IN ('minor','moderate','major','critical')",
            name="ck_device_warnings_severity",
        ),
        sa.ForeignKeyConstraint(["device_id"], ["devices.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_device_warnings_active_type",
        "device_warnings",
        ["device_id", "warning_type"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )
    op.create_index("ix_device_warnings_status_resolved", "device_warnings", ["status", "resolved_at"])

    op.create_table(
        "warning_notifications",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("warning_id", sa.BigInteger(), nullable=False),
        sa.Column("level", sa.SmallInteger(), nullable=False),
        sa.Column("send_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=16), server_default=sa.text("'scheduled'"), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("message_id", sa.String(length=255), nullable=True),
        sa.Column("error_text", sa.Text(), nullable=True),
        sa.CheckConstraint(
            "status IN ('scheduled','sent','failed')",
            name="ck_warning_notifications_status",
        ),
        sa.ForeignKeyConstraint(["warning_id"], ["device_warnings.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("warning_id", "level", name="uq_warning_notifications_warning_level"),
    )
    op.create_index(
        "ix_warning_notifications_status_send_time",
        "warning_notifications",
        ["status", "send_time"],
    )


def downgrade() -> None:
    op.drop_index("ix_warning_notifications_status_send_time", table_name="warning_notifications")
    op.drop_table("warning_notifications")
    op.drop_index("ix_device_warnings_status_resolved", table_name="device_warnings")
    op.drop_index("uq_device_warnings_active_type", table_name="device_warnings")
    op.drop_table("device_warnings")
    op.drop_index("ix_device_raw_messages_device_received", table_name="device_raw_messages")
    op.drop_table("device_raw_messages")
    op.drop_index("ix_device_history_device_ingested", table_name="device_history")
    op.drop_table("device_history")
    op.drop_table("device_snapshots")
    op.drop_table("ingestion_endpoints")
    op.drop_table("devices")
