"""add actor_email_hash to registry_activities

Revision ID: 002
Revises: 001
Create Date: 2026-10-18 12:00:00.000000+00:00

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: str | None = "001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.add_column(
        "registry_activities",
        sa.Column("actor_email_hash", sa.String(64), nullable=True),
    )
    op.create_index(
        op.f("ix_registry_activities_actor_email_hash"),
        "registry_activities",
        ["actor_email_hash"],
    )


def downgrade() -> None:
    op.drop_index(
        op.f("ix_registry_activities_actor_email_hash"), table_name="registry_activities"
    )
    op.drop_column("registry_activities", "actor_email_hash")
