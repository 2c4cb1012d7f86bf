"""add team seats and per-instance resource grants

Revision ID: 1b2c3d4e5f6a
Revises: 0a1b2c3d4e5f
Create Date: 2026-10-17 15:30:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
import sqlmodel.sql.sqltypes
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "1b2c3d4e5f6a"
down_revision: Union[str, Sequence[str], None] = "0a1b2c3d4e5f"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_str = sqlmodel.sql.sqltypes.AutoString


def upgrade() -> None:
    """Create team_memberships and resource_permissions."""
    op.create_table(
        "team_memberships",
        sa.Column("id", _str(), nullable=False),
        sa.Column("org_id", _str(), nullable=False),
        sa.Column("team_id", _str(), nullable=False),
        sa.Column("user_id", _str(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("org_id", "team_id", "user_id", name="uq_team_membership"),
    )
    op.create_index("ix_team_memberships_org_id", "team_memberships", ["org_id"])
    op.create_index("ix_team_memberships_team_id", "team_memberships", ["team_id"])
    op.create_index("ix_team_memberships_user_id", "team_memberships", ["user_id"])

    op.create_table(
        "resource_permissions",
        sa.Column("id", _str(), nullable=False),
        sa.Column("org_id", _str(), nullable=False),
        sa.Column("user_id", _str(), nullable=False),
        sa.Column("permission_id", _str(), nullable=False),
        sa.Column("resource_type", _str(), nullable=False),
        sa.Column("resource_id", _str(), nullable=False),
        sa.Column("granted", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["permission_id"], ["permissions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "org_id",
            "user_id",
            "resource_type",
            "resource_id",
            "permission_id",
            name="uq_resource_permission",
        ),
    )
    op.create_index("ix_resource_permissions_org_id", "resource_permissions", ["org_id"])
    op.create_index("ix_resource_permissions_user_id", "resource_permissions", ["user_id"])
    op.create_index(
        "ix_resource_permissions_permission_id", "resource_permissions", ["permission_id"]
    )
    op.create_index(
        "ix_resource_permissions_resource_type", "resource_permissions", ["resource_type"]
    )
    op.create_index("ix_resource_permissions_resource_id", "resource_permissions", ["resource_id"])


def downgrade() -> None:
    op.drop_table("resource_permissions")
    op.drop_table("team_memberships")
