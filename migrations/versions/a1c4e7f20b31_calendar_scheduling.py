"""calendar_scheduling

Creates the facility calendar tables:
  - facilities            owning tenant of every calendar row
  - facility_settings     per-facility scheduling warning policy (one per facility)
  - activity_series       recurring activity definitions (dtstart + rrule + timezone)
  - activity_instances    concrete bookable time blocks
  - series_exceptions     suppressed occurrences of a series

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: a1c4e7f20b31
Revises:
Create Date: 2026-10-19 09:12:40.318220
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'a1c4e7f20b31'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Facility ──────────────────────────────────────────────────────────
    if "facilities" not in existing:
        op.create_table(
            "facilities",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("slug", sa.String(length=100), nullable=False),
            sa.Column("timezone", sa.String(length=80), nullable=False,
                      server_default="America/Chicago"),
            sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("slug"),
        )

    # ── FacilitySettings ──────────────────────────────────────────────────
    if "facility_settings" not in existing:
        op.create_table(
            "facility_settings",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("facility_id", sa.Integer(), nullable=False),
            sa.Column("business_hours", sa.JSON(), nullable=True,
                      comment='{"start": "HH:MM", "end": "HH:MM", "days": [0..6]} with 0 = Sunday'),
            sa.Column("warn_therapy_overlap", sa.Boolean(), nullable=True,
                      server_default=sa.true(),
                      comment="Reject overlapping bookings unless overridden"),
            sa.Column("warn_outside_business_hours", sa.Boolean(), nullable=True,
                      server_default=sa.true(),
                      comment="Reject out-of-hours bookings unless overridden"),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["facility_id"], ["facilities.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("facility_id"),
        )

    # ── ActivitySeries ────────────────────────────────────────────────────
    if "activity_series" not in existing:
        op.create_table(
            "activity_series",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("facility_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=200), nullable=False),
            sa.Column("location", sa.String(length=160), nullable=False),
            sa.Column("template_id", sa.String(length=64), nullable=True),
            sa.Column("dtstart", sa.DateTime(timezone=True), nullable=False),
            sa.Column("duration_minutes", sa.Integer(), nullable=False),
            sa.Column("rrule", sa.String(length=200), nullable=False,
                      comment="FREQ=..;INTERVAL=..[;BYDAY=..][;COUNT=..][;UNTIL=..]"),
            sa.Column("until", sa.DateTime(timezone=True), nullable=True,
                      comment="Mirror of UNTIL for range queries"),
            sa.Column("timezone", sa.String(length=80), nullable=False),
            sa.Column("checklist", sa.JSON(), nullable=True),
            sa.Column("adaptations", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["facility_id"], ["facilities.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_activity_series_facility_id", "activity_series", ["facility_id"])

    # ── ActivityInstance ──────────────────────────────────────────────────
    if "activity_instances" not in existing:
        op.create_table(
            "activity_instances",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("facility_id", sa.Integer(), nullable=False),
            sa.Column("series_id", sa.Integer(), nullable=True),
            sa.Column("occurrence_key", sa.String(length=40), nullable=True,
                      comment="Canonical ISO instant computed by the expander"),
            sa.Column("state", sa.String(length=20), nullable=False,
                      server_default="standalone",
                      comment="standalone | series_generated | series_override"),
            sa.Column("title", sa.String(length=200), nullable=False),
            sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("location", sa.String(length=160), nullable=False),
            sa.Column("template_id", sa.String(length=64), nullable=True),
            sa.Column("checklist", sa.JSON(), nullable=True),
            sa.Column("adaptations", sa.JSON(), nullable=True),
            sa.Column("conflict_override", sa.Boolean(), nullable=True,
                      server_default=sa.false(),
                      comment="Creator explicitly accepted a scheduling warning"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["facility_id"], ["facilities.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["series_id"], ["activity_series.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("series_id", "occurrence_key", name="uq_instance_series_occurrence"),
        )
        op.create_index("ix_activity_instances_facility_id", "activity_instances", ["facility_id"])
        op.create_index("ix_activity_instances_series_id", "activity_instances", ["series_id"])
        op.create_index(
            "ix_activity_instances_facility_start", "activity_instances", ["facility_id", "start_at"],
        )

    # ── SeriesException ───────────────────────────────────────────────────
    if "series_exceptions" not in existing:
        op.create_table(
            "series_exceptions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("facility_id", sa.Integer(), nullable=False),
            sa.Column("series_id", sa.Integer(), nullable=False),
            sa.Column("occurrence_start_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("occurrence_key", sa.String(length=40), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["facility_id"], ["facilities.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["series_id"], ["activity_series.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("series_id", "occurrence_key", name="uq_series_exception_occurrence"),
        )
        op.create_index("ix_series_exceptions_facility_id", "series_exceptions", ["facility_id"])
        op.create_index("ix_series_exceptions_series_id", "series_exceptions", ["series_id"])


def downgrade():
    op.drop_table("series_exceptions")
    op.drop_table("activity_instances")
    op.drop_table("activity_series")
    op.drop_table("facility_settings")
    op.drop_table("facilities")
