"""Patient history mapping, read to attribute history access to its patient.

Revision ID: 0002_patient_history
Revises: 0001_initial
Create Date: 2026-10-20
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision: str = "0002_patient_history"
down_revision: str | None = "0001_initial"
branch_labels: str | None = None
depends_on: str | None = None


def upgrade() -> None:
    # patient_history (owned by the patient-records service)
    op.create_table(
        "patient_history",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "patient_id",
            sa.String(36),
            sa.ForeignKey("patients.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_patient_history_patient_id", "patient_history", ["patient_id"])


def downgrade() -> None:
    op.drop_table("patient_history")
