import csv
import io
import logging
import os
from datetime import timedelta

os.environ.setdefault("PASSWORD_HASH_MEMORY_KIB", "1024")
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")

from clickstudio.core.auth import UserContext
from clickstudio.core.db import build_engine, build_session_factory
from clickstudio.models import AuditLog, Base, User, utcnow
from clickstudio.services.audit import AuditAction, AuditFilters, AuditLogger, grouped_actions
from clickstudio.services.users import create_user, delete_user, list_users


def _setup(tmp_path):
    engine = build_engine(f"sqlite+pysqlite:///{tmp_path / 'audit.db'}")
    Base.metadata.create_all(bind=engine)
    factory = build_session_factory(engine)
    return factory, AuditLogger(factory)


def _user(factory, username: str) -> str:
    with factory() as db:
        return create_user(db, email=f"{username}@acme.io", username=username, password="Quiet!Field88").id


def test_record_takes_identity_snapshots(tmp_path):
    factory, audit = _setup(tmp_path)
    user_id = _user(factory, "bea")

    audit.record(AuditAction.LOGIN, user_id=user_id, ip_address="10.1.1.1", user_agent="ua/1")

    with factory() as db:
        entry = db.query(AuditLog).one()
    assert entry.action == "auth.login"
    assert entry.status == "success"
    assert entry.username_snapshot == "bea"
    assert entry.email_snapshot == "bea@acme.io"
    assert entry.ip_address == "10.1.1.1"


def test_record_failure_is_logged_not_raised(caplog):
    def broken_factory():
        raise RuntimeError("database is locked")

    audit = AuditLogger(broken_factory)
    with caplog.at_level(logging.ERROR, logger="audit"):
        audit.record(AuditAction.LOGIN, user_id="u-1")

    assert "Audit log write failed" in caplog.text
    assert "action=auth.login" in caplog.text


def test_delete_where_removes_only_matching_and_audits_itself(tmp_path):
    factory, audit = _setup(tmp_path)
    admin_id = _user(factory, "root_admin")
    for _ in range(3):
        audit.record(AuditAction.LOGIN, user_id=admin_id)
    audit.record(AuditAction.LOGOUT, user_id=admin_id)
    audit.record(AuditAction.LOGIN_FAILED, status="failure")

    with factory() as db:
        deleted = audit.delete_where(db, AuditFilters(action="auth.login"), actor_id=admin_id, ip_address="10.9.9.9")
    assert deleted == 3

    with factory() as db:
        remaining = sorted(e.action for e in db.query(AuditLog).all())
        assert remaining == ["audit.delete", "auth.login_failed", "auth.logout"]
        deletion = db.query(AuditLog).filter(AuditLog.action == "audit.delete").one()
    assert deletion.user_id == admin_id
    assert deletion.details == {"deletedCount": 3, "filters": {"action": "auth.login"}}
    assert deletion.ip_address == "10.9.9.9"


def test_list_filters_and_pagination(tmp_path):
    factory, audit = _setup(tmp_path)
    bea = _user(factory, "bea")
    cal = _user(factory, "cal")
    for _ in range(5):
        audit.record(AuditAction.LOGIN, user_id=bea)
    audit.record(AuditAction.LOGIN_FAILED, user_id=cal, status="failure")

    with factory() as db:
        entries, total = audit.list(db, AuditFilters(user_id=bea), page=2, limit=2)
        assert total == 5
        assert len(entries) == 2

        entries, total = audit.list(db, AuditFilters(username="CA"), page=1, limit=50)
        assert total == 1 and entries[0].user_id == cal

        _, total = audit.list(db, AuditFilters(status="failure"), page=1, limit=50)
        assert total == 1

        future = utcnow() + timedelta(days=1)
        _, total = audit.list(db, AuditFilters(start_date=future), page=1, limit=50)
        assert total == 0


def test_name_filters_match_wildcards_literally(tmp_path):
    factory, audit = _setup(tmp_path)
    for username in ("ops_lead", "opsxlead"):
        audit.record(AuditAction.LOGIN, user_id=_user(factory, username))

    with factory() as db:
        underscored, total = audit.list(db, AuditFilters(username="ops_"))
        percent, _ = audit.list(db, AuditFilters(email="%"))
        users, _ = list_users(db, search="s_l")
    assert total == 1
    assert underscored[0].username_snapshot == "ops_lead"
    assert percent == []
    assert [u.username for u in users] == ["ops_lead"]


def test_stats_rollup(tmp_path):
    factory, audit = _setup(tmp_path)
    audit.record(AuditAction.LOGIN)
    audit.record(AuditAction.LOGIN)
    audit.record(AuditAction.LOGIN_FAILED, status="failure")
    with factory() as db:
        db.add(AuditLog(action="auth.login", status="success", created_at=utcnow() - timedelta(days=3)))
        db.commit()
        stats = audit.stats(db)

    assert stats["totalEvents"] == 4
    assert stats["last24Hours"] == 3
    assert stats["byAction"] == {"auth.login": 2, "auth.login_failed": 1}
    assert stats["byStatus"] == {"success": 2, "failure": 1}
    assert sum(stats["byHour"].values()) == 3
    assert all(key.endswith(":00") for key in stats["byHour"])


def test_export_csv_quotes_every_cell(tmp_path):
    factory, audit = _setup(tmp_path)
    user_id = _user(factory, "dee")
    audit.record(AuditAction.USER_UPDATE, user_id=user_id, resource_type="user", resource_id='id,with"quote')

    with factory() as db:
        body = audit.export_csv(db, AuditFilters())

    lines = body.strip().splitlines()
    assert lines[0].startswith('"ID","User ID","Username (Snapshot)"')
    rows = list(csv.reader(io.StringIO(body)))
    assert rows[1][2] == "dee"
    assert rows[1][5] == "user.update"
    assert rows[1][7] == 'id,with"quote'


def test_entries_survive_user_deletion(tmp_path):
    factory, audit = _setup(tmp_path)
    admin_id = _user(factory, "boss")
    victim_id = _user(factory, "temp_user")
    audit.record(AuditAction.LOGIN, user_id=victim_id)

    actor = UserContext(user_id=admin_id, email="boss@acme.io", username="boss", session_id="s", roles=["super_admin"])
    with factory() as db:
        delete_user(db, db.get(User, victim_id), actor=actor)

    with factory() as db:
        assert db.get(User, victim_id) is None
        entry = db.query(AuditLog).filter(AuditLog.user_id == victim_id).one()
    assert entry.username_snapshot == "temp_user"
    assert entry.email_snapshot == "temp_user@acme.io"


def test_metadata_and_action_catalog(tmp_path):
    factory, audit = _setup(tmp_path)
    audit.record(AuditAction.LOGIN, user_id=_user(factory, "eve"))
    audit.record(AuditAction.LOGIN_FAILED, status="failure")

    with factory() as db:
        meta = audit.metadata(db)
    assert meta == {"usernames": ["eve"], "emails": ["eve@acme.io"], "statuses": ["failure", "success"]}

    grouped = grouped_actions()
    assert "audit.delete" in grouped["audit"]
    assert "connection.connect" in grouped["connection"]
    assert AuditAction.LOGIN.category == "auth"
