"""
Stored ClickHouse connection endpoints, access grants and pooled connect.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...core.auth import UserContext, get_current_user, require_permission
from ...core.db import get_db
from ...core.errors import AppError
from ...core.vault import CredentialVault
from ...models import ClickHouseConnection
from ...schemas.common import ok
from ...schemas.connections import ConnectionCreate, ConnectionOut, ConnectionTestIn, ConnectionUpdate
from ...services import connections as conn_service
from ...services.audit import AuditAction, AuditLogger
from ...services.client_manager import ClientFactory, ClientManager, ConnectionConfig
from ...services.permissions import Permission
from ..deps import get_audit, get_client_factory, get_client_manager, get_vault


router = APIRouter(prefix="/rbac/connections", tags=["connections"])


def connection_out(conn: ClickHouseConnection) -> ConnectionOut:
    return ConnectionOut(
        id=conn.id,
        name=conn.name,
        host=conn.host,
        port=conn.port,
        username=conn.username,
        database=conn.database,
        is_default=conn.is_default,
        is_active=conn.is_active,
        ssl_enabled=conn.ssl_enabled,
        has_password=bool(conn.password_encrypted),
        created_by=conn.created_by,
        created_at=conn.created_at,
        updated_at=conn.updated_at,
        metadata=conn.metadata_json,
    )


def _payload_dict(payload: ConnectionCreate | ConnectionUpdate) -> dict:
    data = payload.model_dump(exclude_unset=True)
    if "metadata" in data:
        data["metadata_json"] = data.pop("metadata")
    return data


@router.get("")
def list_connections(
    db: Session = Depends(get_db),
    _user: UserContext = Depends(require_permission(Permission.CONNECTIONS_VIEW)),
) -> dict:
    return ok({"connections": [connection_out(c).dump() for c in conn_service.list_connections(db)]})


@router.get("/my")
def my_connections(
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> dict:
    return ok({"connections": [connection_out(c).dump() for c in conn_service.visible_connections(db, user)]})


@router.get("/default")
def default_connection(
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
) -> dict:
    conn = conn_service.get_default_connection(db)
    if conn is None or not conn_service.can_use_connection(db, user, conn.id):
        return ok({"connection": None})
    return ok({"connection": connection_out(conn).dump()})


@router.post("/test")
def test_unsaved_connection(
    payload: ConnectionTestIn,
    _user: UserContext = Depends(require_permission(Permission.SETTINGS_VIEW)),
    factory: ClientFactory = Depends(get_client_factory),
) -> dict:
    config = ConnectionConfig(
        url=conn_service.build_url(payload.host, payload.port, payload.ssl_enabled),
        username=payload.username,
        password=payload.password or "",
        database=payload.database,
    )
    return ok(conn_service.test_connection(factory, config))


@router.get("/{connection_id}")
def get_connection(
    connection_id: str,
    db: Session = Depends(get_db),
    _user: UserContext = Depends(require_permission(Permission.CONNECTIONS_VIEW)),
) -> dict:
    return ok({"connection": connection_out(conn_service.get_connection(db, connection_id)).dump()})


@router.post("", status_code=201)
def create_connection(
    payload: ConnectionCreate,
    db: Session = Depends(get_db),
    user: UserContext = Depends(require_permission(Permission.CONNECTIONS_EDIT)),
    vault: CredentialVault = Depends(get_vault),
    audit: AuditLogger = Depends(get_audit),
) -> dict:
    conn = conn_service.create_connection(db, vault, _payload_dict(payload), created_by=user.user_id)
    audit.record(
        AuditAction.CONNECTION_CREATE,
        user_id=user.user_id,
        resource_type="connection",
        resource_id=conn.id,
        details={"name": conn.name, "host": conn.host, "port": conn.port},
        ip_address=user.ip_address,
        user_agent=user.user_agent,
    )
    return ok({"connection": connection_out(conn).dump()})


@router.api_route("/{connection_id}", methods=["PATCH", "PUT"])
def update_connection(
    connection_id: str,
    payload: ConnectionUpdate,
    db: Session = Depends(get_db),
    user: UserContext = Depends(require_permission(Permission.CONNECTIONS_EDIT)),
    vault: CredentialVault = Depends(get_vault),
    audit: AuditLogger = Depends(get_audit),
) -> dict:
    conn = conn_service.get_connection(db, connection_id)
    changes = _payload_dict(payload)
    updated = conn_service.update_connection(db, vault, conn, changes)
    audit.record(
        AuditAction.CONNECTION_UPDATE,
        user_id=user.user_id,
        resource_type="connection",
        resource_id=connection_id,
        details={"fields": sorted(k for k in changes if k != "password"), "passwordChanged": "password" in changes},
        ip_address=user.ip_address,
        user_agent=user.user_agent,
    )
    return ok({"connection": connection_out(updated).dump()})


@router.delete("/{connection_id}")
def delete_connection(
    connection_id: str,
    db: Session = Depends(get_db),
    user: UserContext = Depends(require_permission(Permission.CONNECTIONS_DELETE)),
    audit: AuditLogger = Depends(get_audit),
) -> dict:
    conn = conn_service.get_connection(db, connection_id)
    name = conn.name
    conn_service.delete_connection(db, conn)
    audit.record(
        AuditAction.CONNECTION_DELETE,
        user_id=user.user_id,
        resource_type="connection",
        resource_id=connection_id,
        details={"name": name},
        ip_address=user.ip_address,
        user_agent=user.user_agent,
    )
    return ok({"message": "Connection deleted successfully"})


@router.post("/{connection_id}/default")
def set_default_connection(
    connection_id: str,
    db: Session = Depends(get_db),
    user: UserContext = Depends(require_permission(Permission.CONNECTIONS_EDIT)),
    audit: AuditLogger = Depends(get_audit),
) -> dict:
    conn = conn_service.set_default_connection(db, conn_service.get_connection(db, connection_id))
    audit.record(
        AuditAction.CONNECTION_UPDATE,
        user_id=user.user_id,
        resource_type="connection",
        resource_id=connection_id,
        details={"operation": "set_default"},
        ip_address=user.ip_address,
        user_agent=user.user_agent,
    )
    return ok({"connection": connection_out(conn).dump()})


@router.post("/{connection_id}/test")
def test_saved_connection(
    connection_id: str,
    db: Session = Depends(get_db),
    _user: UserContext = Depends(require_permission(Permission.SETTINGS_VIEW)),
    vault: CredentialVault = Depends(get_vault),
    factory: ClientFactory = Depends(get_client_factory),
) -> dict:
    conn = conn_service.get_connection(db, connection_id)
    return ok(conn_service.test_connection(factory, conn_service.connection_config(vault, conn)))


@router.post("/{connection_id}/connect")
def connect(
    connection_id: str,
    db: Session = Depends(get_db),
    user: UserContext = Depends(get_current_user),
    vault: CredentialVault = Depends(get_vault),
    clients: ClientManager = Depends(get_client_manager),
    audit: AuditLogger = Depends(get_audit),
) -> dict:
    conn = conn_service.get_connection(db, connection_id)
    try:
        result = conn_service.connect(db, vault, clients, conn, user)
    except AppError as exc:
        audit.record(
            AuditAction.CONNECTION_CONNECT,
            user_id=user.user_id,
            resource_type="connection",
            resource_id=connection_id,
            details={"connectionName": conn.name, "host": conn.host},
            status="failure",
            error_message=exc.message,
            ip_address=user.ip_address,
            user_agent=user.user_agent,
        )
        raise
    audit.record(
        AuditAction.CONNECTION_CONNECT,
        user_id=user.user_id,
        resource_type="connection",
        resource_id=connection_id,
        details={"connectionName": conn.name, "host": conn.host},
        ip_address=user.ip_address,
        user_agent=user.user_agent,
    )
    return ok(result)


@router.post("/{connection_id}/access/{user_id}")
def grant_access(
    connection_id: str,
    user_id: str,
    db: Session = Depends(get_db),
    user: UserContext = Depends(require_permission(Permission.CONNECTIONS_EDIT)),
    audit: AuditLogger = Depends(get_audit),
) -> dict:
    conn = conn_service.get_connection(db, connection_id)
    conn_service.grant_access(db, conn, user_id, granted_by=user.user_id)
    audit.record(
        AuditAction.CONNECTION_GRANT_ACCESS,
        user_id=user.user_id,
        resource_type="connection",
        resource_id=connection_id,
        details={"targetUserId": user_id},
        ip_address=user.ip_address,
        user_agent=user.user_agent,
    )
    return ok({"message": "Access granted"})


@router.delete("/{connection_id}/access/{user_id}")
def revoke_access(
    connection_id: str,
    user_id: str,
    db: Session = Depends(get_db),
    user: UserContext = Depends(require_permission(Permission.CONNECTIONS_EDIT)),
    audit: AuditLogger = Depends(get_audit),
) -> dict:
    conn = conn_service.get_connection(db, connection_id)
    removed = conn_service.revoke_access(db, conn, user_id)
    audit.record(
        AuditAction.CONNECTION_REVOKE_ACCESS,
        user_id=user.user_id,
        resource_type="connection",
        resource_id=connection_id,
        details={"targetUserId": user_id, "removed": removed},
        ip_address=user.ip_address,
        user_agent=user.user_agent,
    )
    return ok({"message": "Access revoked"})


@router.get("/{connection_id}/users")
def connection_users(
    connection_id: str,
    db: Session = Depends(get_db),
    _user: UserContext = Depends(require_permission(Permission.CONNECTIONS_VIEW)),
) -> dict:
    conn = conn_service.get_connection(db, connection_id)
    return ok({"users": conn_service.connection_users(db, conn)})
