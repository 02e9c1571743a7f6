"""SQLAlchemy table metadata for doctor visit records."""

from __future__ import annotations

import sqlalchemy as sa

metadata = sa.MetaData()

# Clinical attributes a visit may carry.  The concurrency layer treats these
# as opaque values; only the store knows which names map to columns.
VISIT_FIELDS = (
    "doctor_name",
    "visit_date",
    "specialty",
    "reason",
    "diagnosis",
    "prescription",
    "notes",
    "follow_up_date",
)

# Columns maintained by the store and the versioned-update protocol.  They are
# never accepted from a caller supplied patch.
BOOKKEEPING_FIELDS = ("id", "owner_id", "version", "created_at", "updated_at")

doctor_visits = sa.Table(
    "doctor_visits",
    metadata,
    sa.Column("id", sa.String(64), primary_key=True),
    sa.Column("owner_id", sa.String(64), nullable=False),
    sa.Column("doctor_name", sa.Text),
    sa.Column("visit_date", sa.Text),
    sa.Column("specialty", sa.Text),
    sa.Column("reason", sa.Text),
    sa.Column("diagnosis", sa.Text),
    sa.Column("prescription", sa.Text),
    sa.Column("notes", sa.Text),
    sa.Column("follow_up_date", sa.Text),
    sa.Column("version", sa.Integer, nullable=False, server_default=sa.text("1")),
    sa.Column("created_at", sa.Float, nullable=False),
    sa.Column("updated_at", sa.Float, nullable=False),
    sa.CheckConstraint("version >= 1", name="ck_doctor_visits_version_positive"),
)
sa.Index("idx_doctor_visits_owner", doctor_visits.c.owner_id)


__all__ = ["metadata", "doctor_visits", "VISIT_FIELDS", "BOOKKEEPING_FIELDS"]
