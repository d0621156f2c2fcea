"""add stage change sequence and intake duplicate override

Revision ID: 202610190002
Revises: 202610190001
Create Date: 2026-10-19 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190002"
down_revision: str | None = "202610190001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.add_column("intakes", sa.Column("duplicate_override_at", sa.DateTime(timezone=True), nullable=True))

    op.add_column("stage_changes", sa.Column("sequence", sa.Integer(), nullable=False, server_default="0"))
    op.execute(
        """
        UPDATE stage_changes
        SET sequence = (
            SELECT COUNT(*)
            FROM stage_changes AS earlier
            WHERE earlier.opportunity_id = stage_changes.opportunity_id
              AND (
                earlier.created_at < stage_changes.created_at
                OR (earlier.created_at = stage_changes.created_at AND earlier.id <= stage_changes.id)
              )
        )
        """
    )
    op.create_unique_constraint(
        "uq_stage_changes_opportunity_sequence",
        "stage_changes",
        ["opportunity_id", "sequence"],
    )


def downgrade() -> None:
    op.drop_constraint("uq_stage_changes_opportunity_sequence", "stage_changes", type_="unique")
    op.drop_column("stage_changes", "sequence")
    op.drop_column("intakes", "duplicate_override_at")
