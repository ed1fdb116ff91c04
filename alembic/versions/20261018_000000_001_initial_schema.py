"""Initial schema: shops, registries, collaborators, activity and customer sessions.

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]


def upgrade() -> None:
    # Create enum types
    op.execute("CREATE TYPE collaborator_role AS ENUM ('owner', 'collaborator', 'viewer')")
    op.execute(
        "CREATE TYPE permission_level AS ENUM ('none', 'read_only', 'read_write', 'admin')"
    )
    op.execute(
        "CREATE TYPE collaborator_status AS ENUM "
        "('pending', 'active', 'declined', 'expired', 'revoked')"
    )

    # Create shops table
    op.create_table(
        "shops",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("domain", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("is_installed", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("installed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("uninstalled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_shops")),
    )
    op.create_index(op.f("ix_shops_domain"), "shops", ["domain"], unique=True)

    # Create registries table
    op.create_table(
        "registries",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("shop_id", sa.UUID(), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("owner_customer_id", sa.String(255), nullable=True),
        sa.Column("owner_email_encrypted", sa.String(1024), nullable=False),
        sa.Column("owner_email_hash", sa.String(64), nullable=False),
        sa.Column("owner_name", sa.String(255), nullable=True),
        sa.Column(
            "collaboration_enabled", sa.Boolean(), nullable=False, server_default="false"
        ),
        sa.Column(
            "collaboration_settings",
            postgresql.JSONB(),
            nullable=False,
            server_default="{}",
        ),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["shop_id"],
            ["shops.id"],
            name=op.f("fk_registries_shop_id_shops"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_registries")),
    )
    op.create_index(op.f("ix_registries_shop_id"), "registries", ["shop_id"])
    op.create_index(op.f("ix_registries_owner_email_hash"), "registries", ["owner_email_hash"])

    # Create registry_collaborators table
    op.create_table(
        "registry_collaborators",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("registry_id", sa.UUID(), nullable=False),
        sa.Column("email_encrypted", sa.String(1024), nullable=False),
        sa.Column("email_hash", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column(
            "role",
            postgresql.ENUM(name="collaborator_role", create_type=False),
            nullable=False,
            server_default="collaborator",
        ),
        sa.Column(
            "permission",
            postgresql.ENUM(name="permission_level", create_type=False),
            nullable=False,
            server_default="read_only",
        ),
        sa.Column(
            "status",
            postgresql.ENUM(name="collaborator_status", create_type=False),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("invited_by", sa.String(255), nullable=True),
        sa.Column("invited_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("declined_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["registry_id"],
            ["registries.id"],
            name=op.f("fk_registry_collaborators_registry_id_registries"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_registry_collaborators")),
    )
    op.create_index(
        op.f("ix_registry_collaborators_registry_id"), "registry_collaborators", ["registry_id"]
    )
    op.create_index(
        op.f("ix_registry_collaborators_email_hash"), "registry_collaborators", ["email_hash"]
    )
    op.create_index(
        op.f("ix_registry_collaborators_expires_at"), "registry_collaborators", ["expires_at"]
    )
    op.create_index(
        "ix_registry_collaborators_registry_status",
        "registry_collaborators",
        ["registry_id", "status"],
    )
    op.create_index(
        "ix_registry_collaborators_registry_email",
        "registry_collaborators",
        ["registry_id", "email_hash"],
    )

    # Create registry_activities table
    op.create_table(
        "registry_activities",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("registry_id", sa.UUID(), nullable=False),
        sa.Column("actor_email_encrypted", sa.String(1024), nullable=True),
        sa.Column("actor_name", sa.String(255), nullable=True),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default="false"),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["registry_id"],
            ["registries.id"],
            name=op.f("fk_registry_activities_registry_id_registries"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_registry_activities")),
    )
    op.create_index(
        op.f("ix_registry_activities_registry_id"), "registry_activities", ["registry_id"]
    )
    op.create_index(op.f("ix_registry_activities_action"), "registry_activities", ["action"])

    # Create customer_sessions table
    op.create_table(
        "customer_sessions",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("shop_id", sa.UUID(), nullable=False),
        sa.Column("customer_id", sa.String(255), nullable=False),
        sa.Column("email_encrypted", sa.String(1024), nullable=False),
        sa.Column("email_hash", sa.String(64), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=True),
        sa.Column("token_ciphertext", sa.Text(), nullable=False),
        sa.Column("scope", sa.String(1024), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("exchange_nonce", sa.String(64), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rotated_to_id", sa.UUID(), nullable=True),
        sa.Column("grace_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rotation_required", sa.Boolean(), nullable=False, server_default="false"),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["shop_id"],
            ["shops.id"],
            name=op.f("fk_customer_sessions_shop_id_shops"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_customer_sessions")),
        sa.UniqueConstraint("exchange_nonce", name=op.f("uq_customer_sessions_exchange_nonce")),
    )
    op.create_index(op.f("ix_customer_sessions_shop_id"), "customer_sessions", ["shop_id"])
    op.create_index(op.f("ix_customer_sessions_email_hash"), "customer_sessions", ["email_hash"])


def downgrade() -> None:
    op.drop_table("customer_sessions")
    op.drop_table("registry_activities")
    op.drop_table("registry_collaborators")
    op.drop_table("registries")
    op.drop_table("shops")

    op.execute("DROP TYPE IF EXISTS collaborator_status")
    op.execute("DROP TYPE IF EXISTS permission_level")
    op.execute("DROP TYPE IF EXISTS collaborator_role")
