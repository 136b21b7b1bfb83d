"""Initial tracking schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

tracking_session_status = postgresql.ENUM(
    "active",
    "closed",
    "cancelled",
    name="tracking_session_status",
    create_type=False,
)
timeline_event_type = postgresql.ENUM(
    "STOP",
    "MOVE",
    name="timeline_event_type",
    create_type=False,
)
tracking_alert_type = postgresql.ENUM(
    "stuck",
    "no_signal",
    "clock_drift",
    name="tracking_alert_type",
    create_type=False,
)
tracking_alert_severity = postgresql.ENUM(
    "info",
    "warn",
    "critical",
    name="tracking_alert_severity",
    create_type=False,
)


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def _updated_at() -> sa.Column:
    return sa.Column(
        "updated_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def upgrade() -> None:
    bind = op.get_bind()
    tracking_session_status.create(bind, checkfirst=True)
    timeline_event_type.create(bind, checkfirst=True)
    tracking_alert_type.create(bind, checkfirst=True)
    tracking_alert_severity.create(bind, checkfirst=True)

    op.create_table(
        "employees",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
    )

    op.create_table(
        "tracking_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", tracking_session_status, nullable=False, server_default="active"),
        _created_at(),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_tracking_sessions_employee_id", "tracking_sessions", ["employee_id"])
    op.create_index("ix_tracking_sessions_started_at", "tracking_sessions", ["started_at"])
    op.create_index(
        "uq_tracking_sessions_one_active_per_employee",
        "tracking_sessions",
        ["employee_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "location_points",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("session_id", sa.Integer(), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("lat", sa.Float(), nullable=False),
        sa.Column("lon", sa.Float(), nullable=False),
        sa.Column("accuracy_m", sa.Float(), nullable=True),
        sa.Column("speed_mps", sa.Float(), nullable=True),
        sa.Column("heading_deg", sa.Float(), nullable=True),
        sa.Column("provider", sa.String(length=32), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("server_received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ordering_ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("idempotency_key", sa.String(length=128), nullable=False),
        sa.Column("clock_drift_flagged", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_late", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("filter_status", sa.String(length=32), nullable=True),
        sa.Column("distance_delta_m", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.CheckConstraint("lat >= -90 AND lat <= 90", name="ck_location_points_lat_range"),
        sa.CheckConstraint("lon >= -180 AND lon <= 180", name="ck_location_points_lon_range"),
        sa.ForeignKeyConstraint(["session_id"], ["tracking_sessions.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_location_points_idempotency_key", "location_points", ["idempotency_key"], unique=True)
    op.create_index("ix_location_points_session_id", "location_points", ["session_id"])
    op.create_index("ix_location_points_employee_id", "location_points", ["employee_id"])
    op.create_index("ix_location_points_recorded_at", "location_points", ["recorded_at"])
    op.create_index("ix_location_points_session_ordering", "location_points", ["session_id", "ordering_ts"])

    op.create_table(
        "session_rollups",
        sa.Column("session_id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("distance_m", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("point_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("late_point_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("drift_flagged_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_speed_kmh", sa.Float(), nullable=True),
        sa.Column("last_ordering_ts", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "distance_state",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "timeline_state",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("frozen_at", sa.DateTime(timezone=True), nullable=True),
        _updated_at(),
        sa.ForeignKeyConstraint(["session_id"], ["tracking_sessions.id"], ondelete="CASCADE"),
    )

    op.create_table(
        "timeline_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("session_id", sa.Integer(), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("event_type", timeline_event_type, nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_seconds", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("center_lat", sa.Float(), nullable=True),
        sa.Column("center_lon", sa.Float(), nullable=True),
        sa.Column("start_lat", sa.Float(), nullable=True),
        sa.Column("start_lon", sa.Float(), nullable=True),
        sa.Column("end_lat", sa.Float(), nullable=True),
        sa.Column("end_lon", sa.Float(), nullable=True),
        sa.Column("distance_m", sa.Float(), nullable=True),
        sa.Column("point_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_open", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _updated_at(),
        sa.ForeignKeyConstraint(["session_id"], ["tracking_sessions.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("session_id", "seq", name="uq_timeline_events_session_seq"),
    )
    op.create_index("ix_timeline_events_session_id", "timeline_events", ["session_id"])
    op.create_index("ix_timeline_events_employee_start", "timeline_events", ["employee_id", "start_time"])

    op.create_table(
        "employee_tracking_states",
        sa.Column("employee_id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("active_session_id", sa.Integer(), nullable=True),
        sa.Column("last_lat", sa.Float(), nullable=True),
        sa.Column("last_lon", sa.Float(), nullable=True),
        sa.Column("last_accuracy_m", sa.Float(), nullable=True),
        sa.Column("last_recorded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("anchor_lat", sa.Float(), nullable=True),
        sa.Column("anchor_lon", sa.Float(), nullable=True),
        sa.Column("anchor_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_stuck", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("stuck_alert_sent", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _updated_at(),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["active_session_id"], ["tracking_sessions.id"], ondelete="SET NULL"),
    )

    op.create_table(
        "tracking_alerts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.Integer(), nullable=True),
        sa.Column("alert_type", tracking_alert_type, nullable=False),
        sa.Column("severity", tracking_alert_severity, nullable=False, server_default="warn"),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("lat", sa.Float(), nullable=True),
        sa.Column("lon", sa.Float(), nullable=True),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_open", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["session_id"], ["tracking_sessions.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_tracking_alerts_employee_id", "tracking_alerts", ["employee_id"])
    op.create_index("ix_tracking_alerts_session_id", "tracking_alerts", ["session_id"])
    op.create_index("ix_tracking_alerts_opened_at", "tracking_alerts", ["opened_at"])
    op.create_index(
        "uq_tracking_alerts_one_open_per_type",
        "tracking_alerts",
        ["employee_id", "alert_type"],
        unique=True,
        postgresql_where=sa.text("is_open"),
    )


def downgrade() -> None:
    op.drop_index("uq_tracking_alerts_one_open_per_type", table_name="tracking_alerts")
    op.drop_table("tracking_alerts")
    op.drop_table("employee_tracking_states")
    op.drop_table("timeline_events")
    op.drop_table("session_rollups")
    op.drop_table("location_points")
    op.drop_index("uq_tracking_sessions_one_active_per_employee", table_name="tracking_sessions")
    op.drop_table("tracking_sessions")
    op.drop_table("employees")

    bind = op.get_bind()
    tracking_alert_severity.drop(bind, checkfirst=True)
    tracking_alert_type.drop(bind, checkfirst=True)
    timeline_event_type.drop(bind, checkfirst=True)
    tracking_session_status.drop(bind, checkfirst=True)
