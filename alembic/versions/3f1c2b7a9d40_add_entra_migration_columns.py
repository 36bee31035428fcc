"""add_entra_migration_columns

Revision ID: 3f1c2b7a9d40
Revises:
Create Date: 2026-10-19 09:12:03.118204

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3f1c2b7a9d40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema - create users with Entra link columns and sign-in tracking.

    migrated_to_entra and entra_user_id are always written together, so the
    check constraint keeps them consistent.
    """
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("username", sa.String(100), nullable=False),
        sa.Column("password", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "migrated_to_entra", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("entra_user_id", sa.String(64), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.CheckConstraint(
            "(migrated_to_entra AND entra_user_id IS NOT NULL)"
            " OR (NOT migrated_to_entra AND entra_user_id IS NULL)",
            name="ck_users_entra_link",
        ),
    )
    op.create_index("ix_users_id", "users", ["id"])
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_entra_user_id", "users", ["entra_user_id"], unique=True)
    op.create_index("ix_users_migrated_to_entra", "users", ["migrated_to_entra"])
    op.create_index("ix_users_created_at", "users", ["created_at"])

    op.create_table(
        "entra_sign_ins",
        sa.Column("entra_user_id", sa.String(64), primary_key=True),
        sa.Column(
            "first_signed_in_at",
            sa.DateTime(),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "last_signed_in_at",
            sa.DateTime(),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("sign_in_count", sa.Integer(), nullable=False, server_default="1"),
    )


def downgrade() -> None:
    """Downgrade schema - drop the bridge tables."""
    op.drop_table("entra_sign_ins")
    op.drop_index("ix_users_created_at", table_name="users")
    op.drop_index("ix_users_migrated_to_entra", table_name="users")
    op.drop_index("ix_users_entra_user_id", table_name="users")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_index("ix_users_id", table_name="users")
    op.drop_table("users")
