"""create tenancy, rbac and security event tables

Revision ID: 0a1b2c3d4e5f
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
import sqlmodel.sql.sqltypes
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0a1b2c3d4e5f"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_str = sqlmodel.sql.sqltypes.AutoString


def upgrade() -> None:
    """Create organizations, users, memberships, roles, permissions, delegations, events."""
    op.create_table(
        "organizations",
        sa.Column("id", _str(), nullable=False),
        sa.Column("name", _str(), nullable=False),
        sa.Column("subdomain", _str(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("plan", _str(), nullable=False, server_default="free"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_organizations_subdomain", "organizations", ["subdomain"], unique=True)

    op.create_table(
        "users",
        sa.Column("id", _str(), nullable=False),
        sa.Column("email", _str(), nullable=False),
        sa.Column("name", _str(), nullable=False, server_default=""),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"])

    op.create_table(
        "roles",
        sa.Column("id", _str(), nullable=False),
        sa.Column("org_id", _str(), nullable=False),
        sa.Column("name", _str(), nullable=False),
        sa.Column("key", _str(), nullable=False),
        sa.Column("description", _str(), nullable=False, server_default=""),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("system_role", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("editable", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("org_id", "key", name="uq_role_org_key"),
    )
    op.create_index("ix_roles_org_id", "roles", ["org_id"])
    op.create_index("ix_roles_key", "roles", ["key"])

    op.create_table(
        "organization_memberships",
        sa.Column("id", _str(), nullable=False),
        sa.Column("org_id", _str(), nullable=False),
        sa.Column("user_id", _str(), nullable=False),
        sa.Column("role", _str(), nullable=True),
        sa.Column("role_id", _str(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("org_id", "user_id", name="uq_membership_org_user"),
    )
    op.create_index("ix_organization_memberships_org_id", "organization_memberships", ["org_id"])
    op.create_index("ix_organization_memberships_user_id", "organization_memberships", ["user_id"])
    op.create_index("ix_organization_memberships_role_id", "organization_memberships", ["role_id"])

    op.create_table(
        "permissions",
        sa.Column("id", _str(), nullable=False),
        sa.Column("resource", _str(), nullable=False),
        sa.Column("action", _str(), nullable=False),
        sa.Column("name", _str(), nullable=False, server_default=""),
        sa.Column("description", _str(), nullable=False, server_default=""),
        sa.Column("category", _str(), nullable=True),
        sa.Column("system_permission", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("resource", "action", name="uq_permission_resource_action"),
    )
    op.create_index("ix_permissions_resource", "permissions", ["resource"])
    op.create_index("ix_permissions_action", "permissions", ["action"])

    op.create_table(
        "role_permissions",
        sa.Column("id", _str(), nullable=False),
        sa.Column("role_id", _str(), nullable=False),
        sa.Column("permission_id", _str(), nullable=False),
        sa.Column("conditions", sa.JSON(), nullable=False),
        sa.Column("scope", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"]),
        sa.ForeignKeyConstraint(["permission_id"], ["permissions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),
    )
    op.create_index("ix_role_permissions_role_id", "role_permissions", ["role_id"])
    op.create_index("ix_role_permissions_permission_id", "role_permissions", ["permission_id"])

    op.create_table(
        "permission_delegations",
        sa.Column("id", _str(), nullable=False),
        sa.Column("org_id", _str(), nullable=False),
        sa.Column("delegator_id", _str(), nullable=False),
        sa.Column("delegatee_id", _str(), nullable=False),
        sa.Column("role_id", _str(), nullable=True),
        sa.Column("permission_ids", sa.JSON(), nullable=False),
        sa.Column("starts_at", sa.DateTime(), nullable=False),
        sa.Column("ends_at", sa.DateTime(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("reason", _str(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["org_id"], ["organizations.id"]),
        sa.ForeignKeyConstraint(["delegator_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["delegatee_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_permission_delegations_org_id", "permission_delegations", ["org_id"])
    op.create_index(
        "ix_permission_delegations_delegator_id", "permission_delegations", ["delegator_id"]
    )
    op.create_index(
        "ix_permission_delegations_delegatee_id", "permission_delegations", ["delegatee_id"]
    )

    # Insert-only: the application never updates or deletes these rows
    op.create_table(
        "security_events",
        sa.Column("id", _str(), nullable=False),
        sa.Column("event_type", _str(), nullable=False),
        sa.Column("risk_level", _str(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("org_id", _str(), nullable=True),
        sa.Column("user_id", _str(), nullable=True),
        sa.Column("email", _str(), nullable=True),
        sa.Column("ip_address", _str(), nullable=True),
        sa.Column("user_agent", _str(), nullable=True),
        sa.Column("payload_json", _str(), nullable=False, server_default="{}"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_security_events_event_type", "security_events", ["event_type"])
    op.create_index("ix_security_events_risk_level", "security_events", ["risk_level"])
    op.create_index("ix_security_events_occurred_at", "security_events", ["occurred_at"])
    op.create_index("ix_security_events_org_id", "security_events", ["org_id"])
    op.create_index("ix_security_events_user_id", "security_events", ["user_id"])
    op.create_index("ix_security_events_ip_address", "security_events", ["ip_address"])


def downgrade() -> None:
    """Drop every table created above, dependents first."""
    op.drop_table("security_events")
    op.drop_table("permission_delegations")
    op.drop_table("role_permissions")
    op.drop_table("permissions")
    op.drop_table("organization_memberships")
    op.drop_table("roles")
    op.drop_table("users")
    op.drop_table("organizations")
