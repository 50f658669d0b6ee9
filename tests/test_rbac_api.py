import os
import uuid

# Cheap password hashing and no background pool cleanup for HTTP tests
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:////tmp/clickstudio_test_rbac_api.db")
os.environ.setdefault("PASSWORD_HASH_MEMORY_KIB", "1024")
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("ENABLE_POOL_CLEANUP", "false")

import pytest
from fastapi.testclient import TestClient

from clickstudio.core.config import Settings
from clickstudio.core.rate_limit import _limiter
from clickstudio.main import create_app

ADMIN_PASSWORD = "Root!Admin#2026"
USER_PASSWORD = "Vi3wer!Pass#77"


def _settings(tmp_path, **overrides) -> Settings:
    values = {
        "database_url": f"sqlite+pysqlite:///{tmp_path / 'rbac.db'}",
        "rbac_admin_password": ADMIN_PASSWORD,
        "enable_pool_cleanup": False,
    }
    values.update(overrides)
    return Settings(**values)


def _client(tmp_path, **overrides) -> TestClient:
    return TestClient(create_app(_settings(tmp_path, **overrides)))


def _login(client: TestClient, identifier: str, password: str) -> dict:
    resp = client.post("/rbac/auth/login", json={"identifier": identifier, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]["tokens"]


def _auth(tokens: dict) -> dict:
    return {"Authorization": f"Bearer {tokens['accessToken']}"}


def _admin(client: TestClient) -> dict:
    return _auth(_login(client, "admin", ADMIN_PASSWORD))


def _role_id(client: TestClient, headers: dict, name: str) -> str:
    roles = client.get("/rbac/roles", headers=headers).json()["data"]["roles"]
    return next(r["id"] for r in roles if r["name"] == name)


def _create_user(client: TestClient, headers: dict, username: str, role: str = "viewer") -> dict:
    resp = client.post(
        "/rbac/users",
        json={
            "email": f"{username}@acme.io",
            "username": username,
            "password": USER_PASSWORD,
            "roleIds": [_role_id(client, headers, role)],
        },
        headers=headers,
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]["user"]


def test_health_is_public(tmp_path):
    with _client(tmp_path) as client:
        resp = client.get("/rbac/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"]["status"] == "healthy"
    assert body["data"]["database"] == {"healthy": True, "type": "sqlite", "error": None}


def test_status_reports_version_migrations_and_pool(tmp_path):
    with _client(tmp_path) as client:
        data = client.get("/rbac/status").json()["data"]
    assert data["version"] == "1.4.0"
    assert data["environment"] == "dev"
    assert data["clientPool"]["clients"] == 0
    # create_all builds the schema without stamping the Alembic baseline.
    assert data["migrations"]["head"] == "20261001_01"
    assert data["migrations"]["current"] is None
    assert data["migrations"]["upToDate"] is False


def test_startup_migrations_bring_schema_to_head(tmp_path):
    with _client(tmp_path, auto_create_db=False, auto_run_migrations=True) as client:
        migrations = client.get("/rbac/status").json()["data"]["migrations"]
        tokens = _login(client, "admin", ADMIN_PASSWORD)
    assert migrations == {"current": "20261001_01", "head": "20261001_01", "pending": [], "upToDate": True}
    assert tokens["tokenType"] == "Bearer"


def test_missing_token_is_401_envelope(tmp_path):
    with _client(tmp_path) as client:
        resp = client.get("/rbac/users")
    assert resp.status_code == 401
    assert resp.headers["WWW-Authenticate"] == "Bearer"
    body = resp.json()
    assert body["success"] is False
    assert body["error"]["code"] == "TOKEN_MISSING"
    assert body["error"]["category"] == "authentication"
    assert body["error"]["id"] == resp.headers["X-Request-ID"]


def test_invalid_token_is_401(tmp_path):
    with _client(tmp_path) as client:
        resp = client.get("/rbac/auth/me", headers={"Authorization": "Bearer not.a.token"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "TOKEN_INVALID"


def test_non_ascii_tokens_are_401(tmp_path):
    with _client(tmp_path) as client:
        refresh = client.post("/rbac/auth/refresh", json={"refreshToken": "éyJ.abc.def"})
        me = client.get("/rbac/auth/me", headers={"Authorization": "Bearer éa.b.c".encode("utf-8")})
    for resp in (refresh, me):
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "TOKEN_INVALID"


def test_wrong_password_is_401(tmp_path):
    with _client(tmp_path) as client:
        resp = client.post("/rbac/auth/login", json={"identifier": "admin", "password": "nope"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "INVALID_CREDENTIALS"


def test_login_returns_profile_and_tokens(tmp_path):
    with _client(tmp_path) as client:
        resp = client.post("/rbac/auth/login", json={"identifier": "ADMIN", "password": ADMIN_PASSWORD})
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["user"]["username"] == "admin"
    assert data["user"]["roles"] == ["super_admin"]
    assert "audit:delete" in data["user"]["permissions"]
    assert data["tokens"]["expiresIn"] == 900
    assert data["tokens"]["tokenType"] == "Bearer"


def test_refresh_and_logout_over_http(tmp_path):
    with _client(tmp_path) as client:
        first = _login(client, "admin", ADMIN_PASSWORD)

        resp = client.post("/rbac/auth/refresh", json={"refreshToken": first["refreshToken"]})
        assert resp.status_code == 200
        second = resp.json()["data"]["tokens"]
        assert second["accessToken"] != first["accessToken"]

        stale = client.get("/rbac/auth/me", headers=_auth(first))
        assert stale.status_code == 401
        assert stale.json()["error"]["code"] == "SESSION_REVOKED"

        me = client.get("/rbac/auth/me", headers=_auth(second))
        assert me.json()["data"]["user"]["username"] == "admin"

        valid = client.get("/rbac/auth/validate", headers=_auth(second)).json()["data"]
        assert valid["valid"] is True
        assert "users:delete" in valid["permissions"]

        assert client.post("/rbac/auth/logout", headers=_auth(second)).status_code == 200
        after = client.get("/rbac/auth/me", headers=_auth(second))
    assert after.status_code == 401
    assert after.json()["error"]["code"] == "SESSION_REVOKED"


def test_viewer_is_forbidden_but_can_read_own_profile(tmp_path):
    with _client(tmp_path) as client:
        admin = _admin(client)
        viewer = _create_user(client, admin, "vera")
        admin_id = client.get("/rbac/auth/me", headers=admin).json()["data"]["user"]["id"]
        headers = _auth(_login(client, "vera", USER_PASSWORD))

        listing = client.get("/rbac/users", headers=headers)
        own = client.get(f"/rbac/users/{viewer['id']}", headers=headers)
        other = client.get(f"/rbac/users/{admin_id}", headers=headers)
        create = client.post("/rbac/roles", json={"name": "rogue", "displayName": "Rogue"}, headers=headers)

    assert listing.status_code == 403
    assert listing.json()["error"]["code"] == "FORBIDDEN"
    assert listing.json()["error"]["category"] == "permission"
    assert own.status_code == 200
    assert own.json()["data"]["user"]["username"] == "vera"
    assert other.status_code == 403
    assert create.status_code == 403


def test_user_crud(tmp_path):
    with _client(tmp_path) as client:
        admin = _admin(client)
        viewer_role = _role_id(client, admin, "viewer")
        analyst_role = _role_id(client, admin, "analyst")

        resp = client.post(
            "/rbac/users",
            json={"email": "Finn@Acme.io", "username": "Finn", "password": USER_PASSWORD, "roleIds": [viewer_role]},
            headers=admin,
        )
        assert resp.status_code == 201
        created = resp.json()["data"]
        assert created["generatedPassword"] is None
        user = created["user"]
        assert user["email"] == "finn@acme.io"
        assert user["username"] == "finn"
        assert user["roles"] == ["viewer"]

        dup = client.post(
            "/rbac/users",
            json={"email": "other@acme.io", "username": "FINN", "password": USER_PASSWORD},
            headers=admin,
        )
        assert dup.status_code == 409
        assert dup.json()["error"]["code"] == "CONFLICT"

        weak = client.post(
            "/rbac/users",
            json={"email": "weak@acme.io", "username": "weakling", "password": "weakpass"},
            headers=admin,
        )
        assert weak.status_code == 400

        listing = client.get("/rbac/users", params={"search": "finn"}, headers=admin)
        assert listing.json()["data"]["total"] == 1
        assert listing.headers["X-Total-Count"] == "1"

        patched = client.patch(f"/rbac/users/{user['id']}", json={"displayName": "Finn H."}, headers=admin)
        assert patched.json()["data"]["user"]["displayName"] == "Finn H."

        reassigned = client.post(
            f"/rbac/users/{user['id']}/assign-roles", json={"roleIds": [analyst_role]}, headers=admin
        )
        assert reassigned.json()["data"]["user"]["roles"] == ["analyst"]

        two_roles = client.post(
            f"/rbac/users/{user['id']}/assign-roles", json={"roleIds": [analyst_role, viewer_role]}, headers=admin
        )
        assert two_roles.status_code == 400
        assert two_roles.json()["error"]["code"] == "VALIDATION_ERROR"

        assert client.delete(f"/rbac/users/{user['id']}", headers=admin).status_code == 200
        gone = client.get(f"/rbac/users/{user['id']}", headers=admin)
    assert gone.status_code == 404
    assert gone.json()["error"]["code"] == "NOT_FOUND"


def test_generated_password_can_log_in(tmp_path):
    with _client(tmp_path) as client:
        admin = _admin(client)
        resp = client.post(
            "/rbac/users",
            json={"email": "gen@acme.io", "username": "gen_user", "generatePassword": True},
            headers=admin,
        )
        generated = resp.json()["data"]["generatedPassword"]
        assert generated and len(generated) == 16
        assert _login(client, "gen@acme.io", generated)["accessToken"]


def test_admin_cannot_delete_self(tmp_path):
    with _client(tmp_path) as client:
        admin = _admin(client)
        admin_id = client.get("/rbac/auth/me", headers=admin).json()["data"]["user"]["id"]
        resp = client.delete(f"/rbac/users/{admin_id}", headers=admin)
    assert resp.status_code == 400


def test_plain_admin_cannot_touch_super_admin(tmp_path):
    with _client(tmp_path) as client:
        root = _admin(client)
        root_id = client.get("/rbac/auth/me", headers=root).json()["data"]["user"]["id"]
        _create_user(client, root, "ops_lead", role="admin")
        lead = _auth(_login(client, "ops_lead", USER_PASSWORD))
        resp = client.patch(f"/rbac/users/{root_id}", json={"displayName": "Pwned"}, headers=lead)
    assert resp.status_code == 403


def test_deleted_user_token_stops_working(tmp_path):
    with _client(tmp_path) as client:
        admin = _admin(client)
        user = _create_user(client, admin, "short_lived")
        headers = _auth(_login(client, "short_lived", USER_PASSWORD))
        assert client.get("/rbac/auth/me", headers=headers).status_code == 200

        client.delete(f"/rbac/users/{user['id']}", headers=admin)
        resp = client.get("/rbac/auth/me", headers=headers)
    assert resp.status_code == 401


def test_role_change_applies_to_next_request(tmp_path):
    with _client(tmp_path) as client:
        admin = _admin(client)
        user = _create_user(client, admin, "promoted")
        headers = _auth(_login(client, "promoted", USER_PASSWORD))
        assert client.get("/rbac/users", headers=headers).status_code == 403

        client.post(
            f"/rbac/users/{user['id']}/assign-roles",
            json={"roleIds": [_role_id(client, admin, "admin")]},
            headers=admin,
        )
        resp = client.get("/rbac/users", headers=headers)
    assert resp.status_code == 200


def test_system_roles_are_immutable(tmp_path):
    with _client(tmp_path) as client:
        admin = _admin(client)
        viewer_id = _role_id(client, admin, "viewer")
        patched = client.patch(f"/rbac/roles/{viewer_id}", json={"displayName": "Changed"}, headers=admin)
        deleted = client.delete(f"/rbac/roles/{viewer_id}", headers=admin)

    for resp in (patched, deleted):
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "SYSTEM_ROLE_IMMUTABLE"
        assert resp.json()["error"]["category"] == "permission"


def test_custom_role_lifecycle(tmp_path):
    with _client(tmp_path) as client:
        admin = _admin(client)
        resp = client.post(
            "/rbac/roles",
            json={
                "name": "Data Team",
                "displayName": "Data Team",
                "permissions": ["database:view", "table:view"],
                "isDefault": True,
            },
            headers=admin,
        )
        assert resp.status_code == 201
        role = resp.json()["data"]["role"]
        assert role["name"] == "data_team"
        assert role["priority"] == 50
        assert role["isSystem"] is False
        assert role["isDefault"] is True

        unknown = client.post(
            "/rbac/roles",
            json={"name": "broken", "displayName": "Broken", "permissions": ["tables:fly"]},
            headers=admin,
        )
        assert unknown.status_code == 400

        # Users created without a role land in the default role.
        newcomer = client.post(
            "/rbac/users",
            json={"email": "new@acme.io", "username": "newcomer", "password": USER_PASSWORD},
            headers=admin,
        ).json()["data"]["user"]
        assert newcomer["roles"] == ["data_team"]

        updated = client.put(f"/rbac/roles/{role['id']}", json={"permissions": ["table:view"]}, headers=admin)
        assert updated.json()["data"]["role"]["permissions"] == ["table:view"]
        assert updated.json()["data"]["role"]["userCount"] == 1

        roles = client.get("/rbac/roles", headers=admin).json()["data"]["roles"]
        assert roles[0]["name"] == "super_admin"

        assert client.delete(f"/rbac/roles/{role['id']}", headers=admin).status_code == 200


def test_permission_catalog(tmp_path):
    with _client(tmp_path) as client:
        admin = _admin(client)
        flat = client.get("/rbac/roles/permissions", headers=admin).json()["data"]["permissions"]
        grouped = client.get("/rbac/roles/permissions/by-category", headers=admin).json()["data"]["permissions"]
    assert {"name": "audit:delete", "category": "audit"} in flat
    assert "audit:delete" in grouped["audit"]


def test_audit_scoping_and_bulk_delete(tmp_path):
    with _client(tmp_path) as client:
        admin = _admin(client)
        admin_id = client.get("/rbac/auth/me", headers=admin).json()["data"]["user"]["id"]
        viewer = _create_user(client, admin, "watcher")
        headers = _auth(_login(client, "watcher", USER_PASSWORD))

        own = client.get("/rbac/audit", headers=headers)
        assert own.status_code == 200
        logs = own.json()["data"]["logs"]
        assert logs and all(entry["userId"] == viewer["id"] for entry in logs)

        foreign = client.get("/rbac/audit", params={"userId": admin_id}, headers=headers)
        assert foreign.status_code == 403
        assert client.delete("/rbac/audit", headers=headers).status_code == 403

        stats = client.get("/rbac/audit/stats", headers=admin).json()["data"]["stats"]
        assert stats["byAction"]["auth.login"] >= 2

        export = client.get("/rbac/audit/export", headers=admin)
        assert export.headers["content-type"].startswith("text/csv")
        assert export.headers["Content-Disposition"].startswith("attachment;")

        deleted = client.delete("/rbac/audit", params={"action": "auth.login"}, headers=admin)
        assert deleted.json()["data"]["deletedCount"] >= 2

        remaining = client.get("/rbac/audit", params={"action": "auth.login"}, headers=admin).json()["data"]
        trail = client.get("/rbac/audit", params={"action": "audit.delete"}, headers=admin).json()["data"]
    assert remaining["total"] == 0
    assert trail["total"] == 1
    assert trail["logs"][0]["userId"] == admin_id


def test_validation_error_envelope(tmp_path):
    with _client(tmp_path) as client:
        resp = client.post("/rbac/auth/login", json={})
    assert resp.status_code == 400
    error = resp.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert error["category"] == "validation"
    fields = {item["field"] for item in error["details"]["errors"]}
    assert {"identifier", "password"} <= fields


def test_unknown_route_uses_error_envelope(tmp_path):
    with _client(tmp_path) as client:
        resp = client.get("/rbac/nowhere")
    assert resp.status_code == 404
    assert resp.json()["success"] is False
    assert resp.json()["error"]["code"] == "NOT_FOUND"


def test_request_id_is_propagated(tmp_path):
    with _client(tmp_path) as client:
        resp = client.get("/rbac/users", headers={"X-Request-ID": "req-abc-123"})
    assert resp.headers["X-Request-ID"] == "req-abc-123"
    assert resp.json()["error"]["id"] == "req-abc-123"


def test_login_is_rate_limited(tmp_path, monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_RPS", "0.1")
    monkeypatch.setenv("RATE_LIMIT_BURST", "1")
    _limiter.reset()
    try:
        with _client(tmp_path) as client:
            payload = {"identifier": "admin", "password": "wrong"}
            first = client.post("/rbac/auth/login", json=payload)
            second = client.post("/rbac/auth/login", json=payload)
            # A made-up bearer token does not earn a fresh bucket.
            forged = [
                client.post("/rbac/auth/login", json=payload, headers={"Authorization": f"Bearer {uuid.uuid4()}"})
                for _ in range(3)
            ]
            health = client.get("/rbac/health")
    finally:
        _limiter.reset()

    assert first.status_code == 401
    assert second.status_code == 429
    assert int(second.headers["Retry-After"]) >= 1
    assert second.json()["error"]["code"] == "RATE_LIMITED"
    assert [r.status_code for r in forged] == [429, 429, 429]
    assert health.status_code == 200


def test_internal_errors_are_hidden_in_prod(tmp_path):
    settings = _settings(
        tmp_path,
        chstudio_env="prod",
        jwt_secret="k9Vq2xLm7Rt4Wz8Ny3Bp6Hs1Jd5Fg0Ac2Ee4Ii6O",
        rbac_encryption_key="p3Lq8Zx1Cv6Bn2Mk7Jh4Gf9Ds5Ar0Ty3Ue8Wo1Q",
        rbac_encryption_salt="ab" * 32,
    )
    app = create_app(settings)

    @app.get("/rbac/boom")
    def boom():
        raise RuntimeError("secret internals")

    with TestClient(app, raise_server_exceptions=False) as client:
        resp = client.get("/rbac/boom")
    assert resp.status_code == 500
    error = resp.json()["error"]
    assert error["code"] == "INTERNAL_ERROR"
    assert error["message"] == "Internal server error"
    assert "secret internals" not in resp.text


def test_prod_refuses_weak_secrets(tmp_path):
    with pytest.raises(RuntimeError):
        create_app(_settings(tmp_path, chstudio_env="prod", jwt_secret="short"))


def test_page_size_capped(tmp_path, monkeypatch):
    monkeypatch.setenv("API_MAX_PAGE_SIZE", "2")
    with _client(tmp_path) as client:
        admin = _admin(client)
        for name in ("pam", "quinn", "rory"):
            _create_user(client, admin, name)
        resp = client.get("/rbac/users", params={"limit": 100}, headers=admin)
        negative = client.get("/rbac/users", params={"page": -1}, headers=admin)
    assert resp.status_code == 200
    assert len(resp.json()["data"]["users"]) == 2
    assert resp.json()["data"]["total"] == 4
    assert resp.headers["X-Page-Size"] == "2"
    assert negative.status_code == 400
