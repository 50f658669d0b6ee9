"""rbac baseline: users, roles, sessions, audit log, connections

Revision ID: 20261001_01
Revises:
Create Date: 2026-10-01
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "20261001_01"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(table_name: str) -> bool:
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    return table_name in set(inspector.get_table_names())


def _index_exists(table_name: str, index_name: str) -> bool:
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    if table_name not in set(inspector.get_table_names()):
        return False
    return index_name in {idx["name"] for idx in inspector.get_indexes(table_name)}


def _create_index(name: str, table: str, columns: list[str], unique: bool = False) -> None:
    if not _index_exists(table, name):
        op.create_index(name, table, columns, unique=unique)


def upgrade() -> None:
    if not _table_exists("rbac_users"):
        op.create_table(
            "rbac_users",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("username", sa.String(length=128), nullable=False),
            sa.Column("display_name", sa.String(length=255), nullable=True),
            sa.Column("avatar_url", sa.String(length=1024), nullable=True),
            sa.Column("password_hash", sa.String(length=255), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("is_system_user", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("last_login_at", sa.DateTime(), nullable=True),
            sa.Column("password_changed_at", sa.DateTime(), nullable=True),
            sa.Column("created_by", sa.String(length=36), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index("ix_rbac_users_email", "rbac_users", ["email"], unique=True)
    _create_index("ix_rbac_users_username", "rbac_users", ["username"], unique=True)
    _create_index("ix_rbac_users_is_active", "rbac_users", ["is_active"])

    if not _table_exists("rbac_roles"):
        op.create_table(
            "rbac_roles",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=64), nullable=False),
            sa.Column("display_name", sa.String(length=128), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index("ix_rbac_roles_name", "rbac_roles", ["name"], unique=True)
    _create_index("ix_rbac_roles_priority", "rbac_roles", ["priority"])

    if not _table_exists("rbac_role_permissions"):
        op.create_table(
            "rbac_role_permissions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("role_id", sa.String(length=36), nullable=False),
            sa.Column("permission", sa.String(length=64), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["role_id"], ["rbac_roles.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("role_id", "permission", name="uq_rbac_role_permissions_role_perm"),
        )
    _create_index("ix_rbac_role_permissions_role_id", "rbac_role_permissions", ["role_id"])

    if not _table_exists("rbac_user_roles"):
        op.create_table(
            "rbac_user_roles",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=36), nullable=False),
            sa.Column("role_id", sa.String(length=36), nullable=False),
            sa.Column("assigned_by", sa.String(length=36), nullable=True),
            sa.Column("assigned_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["user_id"], ["rbac_users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["role_id"], ["rbac_roles.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id", "role_id", name="uq_rbac_user_roles_user_role"),
        )
    _create_index("ix_rbac_user_roles_user_id", "rbac_user_roles", ["user_id"])
    _create_index("ix_rbac_user_roles_role_id", "rbac_user_roles", ["role_id"])

    if not _table_exists("rbac_sessions"):
        op.create_table(
            "rbac_sessions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=36), nullable=False),
            sa.Column("refresh_token_hash", sa.String(length=64), nullable=False),
            sa.Column("ip_address", sa.String(length=64), nullable=True),
            sa.Column("user_agent", sa.String(length=512), nullable=True),
            sa.Column("expires_at", sa.DateTime(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("last_used_at", sa.DateTime(), nullable=True),
            sa.Column("revoked_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["user_id"], ["rbac_users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index("ix_rbac_sessions_user_id", "rbac_sessions", ["user_id"])
    _create_index("ix_rbac_sessions_refresh_token_hash", "rbac_sessions", ["refresh_token_hash"], unique=True)
    _create_index("ix_rbac_sessions_expires_at", "rbac_sessions", ["expires_at"])

    if not _table_exists("rbac_audit_logs"):
        # No FK on user_id: entries outlive the users they mention.
        op.create_table(
            "rbac_audit_logs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=36), nullable=True),
            sa.Column("action", sa.String(length=64), nullable=False),
            sa.Column("resource_type", sa.String(length=64), nullable=True),
            sa.Column("resource_id", sa.String(length=128), nullable=True),
            sa.Column("details", sa.JSON(), nullable=True),
            sa.Column("ip_address", sa.String(length=64), nullable=True),
            sa.Column("user_agent", sa.String(length=512), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="success"),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("username_snapshot", sa.String(length=128), nullable=True),
            sa.Column("email_snapshot", sa.String(length=255), nullable=True),
            sa.Column("display_name_snapshot", sa.String(length=255), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index("ix_rbac_audit_logs_user_id", "rbac_audit_logs", ["user_id"])
    _create_index("ix_rbac_audit_logs_action", "rbac_audit_logs", ["action"])
    _create_index("ix_rbac_audit_logs_status", "rbac_audit_logs", ["status"])
    _create_index("ix_rbac_audit_logs_created_at", "rbac_audit_logs", ["created_at"])
    _create_index("ix_rbac_audit_logs_resource", "rbac_audit_logs", ["resource_type", "resource_id"])

    if not _table_exists("rbac_clickhouse_connections"):
        op.create_table(
            "rbac_clickhouse_connections",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=128), nullable=False),
            sa.Column("host", sa.String(length=255), nullable=False),
            sa.Column("port", sa.Integer(), nullable=False, server_default="8123"),
            sa.Column("username", sa.String(length=128), nullable=False),
            sa.Column("password_encrypted", sa.Text(), nullable=True),
            sa.Column("database", sa.String(length=128), nullable=True),
            sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("ssl_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("created_by", sa.String(length=36), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.Column("metadata", sa.JSON(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists("rbac_user_connections"):
        op.create_table(
            "rbac_user_connections",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=36), nullable=False),
            sa.Column("connection_id", sa.String(length=36), nullable=False),
            sa.Column("can_use", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("granted_by", sa.String(length=36), nullable=True),
            sa.Column("granted_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["user_id"], ["rbac_users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["connection_id"], ["rbac_clickhouse_connections.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id", "connection_id", name="uq_rbac_user_connections"),
        )
    _create_index("ix_rbac_user_connections_user_id", "rbac_user_connections", ["user_id"])
    _create_index("ix_rbac_user_connections_connection_id", "rbac_user_connections", ["connection_id"])


def downgrade() -> None:
    for table in (
        "rbac_user_connections",
        "rbac_clickhouse_connections",
        "rbac_audit_logs",
        "rbac_sessions",
        "rbac_user_roles",
        "rbac_role_permissions",
        "rbac_roles",
        "rbac_users",
    ):
        if _table_exists(table):
            op.drop_table(table)
