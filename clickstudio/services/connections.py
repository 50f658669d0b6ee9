"""
Stored ClickHouse connections and per-user access grants.

Passwords are sealed with the credential vault before they touch the
database and are only decrypted to build a client configuration. Pooled
clients are never closed from here: a changed password yields a new
fingerprint and the old client ages out through idle cleanup.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

from sqlalchemy.orm import Session

from ..core.auth import UserContext
from ..core.errors import AppError, PermissionDenied, log_exception
from ..core.vault import CredentialVault
from ..models import ClickHouseConnection, User, UserConnectionAccess, utcnow
from .client_manager import ClientFactory, ClientManager, ConnectionConfig

logger = logging.getLogger("connections")

DEFAULT_PORT = 8123
_UPDATABLE = ("name", "host", "port", "username", "database", "is_active", "ssl_enabled", "metadata_json")


def build_url(host: str, port: Optional[int], ssl_enabled: bool) -> str:
    protocol = "https" if ssl_enabled else "http"
    return f"{protocol}://{host}:{port or DEFAULT_PORT}"


def list_connections(db: Session, *, active_only: bool = False) -> list[ClickHouseConnection]:
    query = db.query(ClickHouseConnection)
    if active_only:
        query = query.filter(ClickHouseConnection.is_active.is_(True))
    return query.order_by(ClickHouseConnection.is_default.desc(), ClickHouseConnection.name.asc()).all()


def get_connection(db: Session, connection_id: str) -> ClickHouseConnection:
    conn = db.get(ClickHouseConnection, connection_id)
    if conn is None:
        raise AppError.not_found("Connection not found")
    return conn


def get_default_connection(db: Session) -> Optional[ClickHouseConnection]:
    return (
        db.query(ClickHouseConnection)
        .filter(ClickHouseConnection.is_default.is_(True), ClickHouseConnection.is_active.is_(True))
        .first()
    )


def _clear_default(db: Session, except_id: Optional[str] = None) -> None:
    query = db.query(ClickHouseConnection).filter(ClickHouseConnection.is_default.is_(True))
    if except_id:
        query = query.filter(ClickHouseConnection.id != except_id)
    query.update({ClickHouseConnection.is_default: False}, synchronize_session="fetch")


def create_connection(
    db: Session,
    vault: CredentialVault,
    data: dict[str, Any],
    *,
    created_by: Optional[str] = None,
) -> ClickHouseConnection:
    password = data.get("password")
    if data.get("is_default"):
        _clear_default(db)
    conn = ClickHouseConnection(
        name=data["name"],
        host=data["host"],
        port=data.get("port") or DEFAULT_PORT,
        username=data["username"],
        password_encrypted=vault.encrypt(password) if password else None,
        database=data.get("database"),
        is_default=bool(data.get("is_default")),
        is_active=data.get("is_active", True),
        ssl_enabled=bool(data.get("ssl_enabled")),
        created_by=created_by,
        metadata_json=data.get("metadata_json"),
    )
    db.add(conn)
    db.commit()
    db.refresh(conn)
    logger.info("Created connection id=%s name=%s url=%s", conn.id, conn.name, conn.url)
    return conn


def update_connection(
    db: Session,
    vault: CredentialVault,
    conn: ClickHouseConnection,
    changes: dict[str, Any],
) -> ClickHouseConnection:
    for key in _UPDATABLE:
        if key in changes and changes[key] is not None:
            setattr(conn, key, changes[key])
    if "password" in changes:
        # Empty string clears the stored password; None leaves it unchanged.
        password = changes["password"]
        if password is not None:
            conn.password_encrypted = vault.encrypt(password) if password else None
    if changes.get("is_default") is True:
        _clear_default(db, except_id=conn.id)
        conn.is_default = True
    elif changes.get("is_default") is False:
        conn.is_default = False
    conn.updated_at = utcnow()
    db.commit()
    db.refresh(conn)
    return conn


def set_default_connection(db: Session, conn: ClickHouseConnection) -> ClickHouseConnection:
    _clear_default(db, except_id=conn.id)
    conn.is_default = True
    conn.updated_at = utcnow()
    db.commit()
    db.refresh(conn)
    return conn


def delete_connection(db: Session, conn: ClickHouseConnection) -> None:
    db.delete(conn)
    db.commit()
    logger.info("Deleted connection id=%s name=%s", conn.id, conn.name)


def connection_config(vault: CredentialVault, conn: ClickHouseConnection) -> ConnectionConfig:
    password = vault.decrypt(conn.password_encrypted) if conn.password_encrypted else ""
    return ConnectionConfig(url=conn.url, username=conn.username, password=password, database=conn.database)


def _server_version(client: Any) -> Optional[str]:
    version = client.command("SELECT version()")
    return str(version) if version is not None else None


def test_connection(factory: ClientFactory, config: ConnectionConfig) -> dict[str, Any]:
    """Open a throwaway client, read version and databases, then close it."""
    started = time.monotonic()
    client = None
    try:
        client = factory(config)
        version = _server_version(client)
        databases = [row[0] for row in client.query("SHOW DATABASES").result_rows]
        return {
            "success": True,
            "version": version,
            "databases": databases,
            "latencyMs": int((time.monotonic() - started) * 1000),
        }
    except Exception as exc:
        logger.info("Connection test failed url=%s user=%s: %s", config.url, config.username, exc)
        return {
            "success": False,
            "error": str(exc) or "Connection failed",
            "latencyMs": int((time.monotonic() - started) * 1000),
        }
    finally:
        if client is not None:
            try:
                client.close()
            except Exception as exc:
                log_exception(logger, "Failed to close test client", extra={"url": config.url}, exc=exc)


def user_connections(db: Session, user_id: str) -> list[ClickHouseConnection]:
    return (
        db.query(ClickHouseConnection)
        .join(UserConnectionAccess, UserConnectionAccess.connection_id == ClickHouseConnection.id)
        .filter(
            UserConnectionAccess.user_id == user_id,
            UserConnectionAccess.can_use.is_(True),
            ClickHouseConnection.is_active.is_(True),
        )
        .order_by(ClickHouseConnection.is_default.desc(), ClickHouseConnection.name.asc())
        .all()
    )


def visible_connections(db: Session, user: UserContext) -> list[ClickHouseConnection]:
    if user.is_admin:
        return list_connections(db, active_only=True)
    return user_connections(db, user.user_id)


def can_use_connection(db: Session, user: UserContext, connection_id: str) -> bool:
    if user.is_admin:
        return True
    grant = (
        db.query(UserConnectionAccess.id)
        .filter(
            UserConnectionAccess.user_id == user.user_id,
            UserConnectionAccess.connection_id == connection_id,
            UserConnectionAccess.can_use.is_(True),
        )
        .first()
    )
    return grant is not None


def grant_access(
    db: Session,
    conn: ClickHouseConnection,
    user_id: str,
    *,
    granted_by: Optional[str] = None,
) -> UserConnectionAccess:
    if db.get(User, user_id) is None:
        raise AppError.not_found("User not found")
    access = (
        db.query(UserConnectionAccess)
        .filter(UserConnectionAccess.user_id == user_id, UserConnectionAccess.connection_id == conn.id)
        .first()
    )
    if access is None:
        access = UserConnectionAccess(user_id=user_id, connection_id=conn.id, granted_by=granted_by)
        db.add(access)
    access.can_use = True
    access.granted_by = granted_by
    access.granted_at = utcnow()
    db.commit()
    db.refresh(access)
    return access


def revoke_access(db: Session, conn: ClickHouseConnection, user_id: str) -> bool:
    deleted = (
        db.query(UserConnectionAccess)
        .filter(UserConnectionAccess.user_id == user_id, UserConnectionAccess.connection_id == conn.id)
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted > 0


def connection_users(db: Session, conn: ClickHouseConnection) -> list[dict[str, Any]]:
    rows = (
        db.query(UserConnectionAccess, User)
        .join(User, User.id == UserConnectionAccess.user_id)
        .filter(UserConnectionAccess.connection_id == conn.id)
        .order_by(User.username.asc())
        .all()
    )
    return [
        {
            "userId": user.id,
            "username": user.username,
            "email": user.email,
            "displayName": user.display_name,
            "canUse": access.can_use,
            "grantedBy": access.granted_by,
            "grantedAt": access.granted_at.isoformat() + "Z" if access.granted_at else None,
        }
        for access, user in rows
    ]


def connect(
    db: Session,
    vault: CredentialVault,
    clients: ClientManager,
    conn: ClickHouseConnection,
    user: UserContext,
) -> dict[str, Any]:
    """Obtain a pooled client for a saved connection and verify it answers."""
    if not can_use_connection(db, user, conn.id):
        raise PermissionDenied("You do not have access to this connection")
    if not conn.is_active:
        raise AppError("This connection is not active", "INACTIVE", "connection", 400)

    config = connection_config(vault, conn)
    client = clients.get_client(config)
    if not client.ping():
        raise AppError("Failed to connect to ClickHouse server", "CONNECTION_FAILED", "connection", 503)
    return {
        "connectionId": conn.id,
        "connectionName": conn.name,
        "host": conn.host,
        "port": conn.port,
        "username": conn.username,
        "database": conn.database,
        "version": _server_version(client),
    }
