"""Platform plumbing: storage, rate limiting, access checks, audit history and scripts."""
from decimal import Decimal

import pytest

from app.backoffice.audit import entity_history, event_metadata, record_event
from app.backoffice.db import build_engine, script_session, session_scope
from app.backoffice.models import AuditEvent, Base, Role, User
from app.backoffice.security import SlidingWindowLimiter
from app.backoffice.storage import LocalStorage, StorageError, storage_from_config
from app.backoffice.utils import parse_decimal
from scripts.init_db import seed_only
from scripts.release import release_database_url
from scripts.start import gunicorn_argv

from conftest import login


def test_local_storage_keys(tmp_path):
    storage = LocalStorage(root=tmp_path)
    storage.put_bytes("bank-statements/1/a.csv", b"date,amount\n")
    assert (tmp_path / "bank-statements" / "1" / "a.csv").read_bytes() == b"date,amount\n"
    assert storage.read_bytes("/bank-statements/1/a.csv") == b"date,amount\n"

    storage.delete("bank-statements/1/a.csv")
    storage.delete("bank-statements/1/a.csv")
    with pytest.raises(StorageError):
        storage.read_bytes("bank-statements/1/a.csv")
    with pytest.raises(StorageError):
        storage.put_bytes("../outside.txt", b"x")


def test_storage_from_config():
    assert isinstance(storage_from_config({"STORAGE_BACKEND": "local", "LOCAL_STORAGE_ROOT": "/tmp/x"}), LocalStorage)
    with pytest.raises(StorageError):
        storage_from_config({"STORAGE_BACKEND": "s3"})
    with pytest.raises(StorageError):
        storage_from_config({"STORAGE_BACKEND": "ftp"})


def test_parse_decimal_bounds():
    assert parse_decimal(" 12.50 ") == Decimal("12.50")
    for raw in ("NaN", "sNaN", "Infinity", "-inf", "1e13", "abc", ""):
        assert parse_decimal(raw) is None
    assert parse_decimal(Decimal("Infinity")) is None
    assert parse_decimal("150", max_abs=Decimal("100")) is None
    assert parse_decimal("-99.99", max_abs=Decimal("100")) == Decimal("-99.99")


def test_sliding_window_limiter():
    limiter = SlidingWindowLimiter(limit=2, window_seconds=60)
    assert limiter.hit("a") and limiter.hit("a")
    assert not limiter.hit("a")
    assert limiter.is_limited("a")
    assert not limiter.is_limited("b")
    limiter.reset("a")
    assert not limiter.is_limited("a")
    limiter.record("c")
    limiter.record("c")
    assert limiter.is_limited("c")


def test_limiter_forgets_idle_keys():
    clock = [0.0]
    limiter = SlidingWindowLimiter(limit=2, window_seconds=60, clock=lambda: clock[0])
    limiter.record("10.0.0.1")
    limiter.hit("10.0.0.2")
    assert not limiter.is_limited("10.0.0.3")
    assert len(limiter) == 2

    clock[0] = 61.0
    assert not limiter.is_limited("10.0.0.1")
    assert len(limiter) == 0

    limiter.record("10.0.0.4")
    clock[0] = 200.0
    limiter.record("10.0.0.5")
    assert len(limiter) == 1


def test_anonymous_json_request_gets_401(client):
    r = client.get("/admin/projects", headers={"Accept": "application/json"})
    assert r.status_code == 401
    assert r.json["error"] == "Authentication required."


def test_forbidden_json_names_missing_permission(client):
    login(client, email="staff@example.com")
    r = client.get("/admin/users", headers={"Accept": "application/json"})
    assert r.status_code == 403
    assert r.json["missing_permission"] == "users.view"


def test_login_stamps_last_login(client, app):
    login(client)
    with session_scope(app) as s:
        assert s.query(User).filter(User.email == "admin@example.com").one().last_login_at is not None


def test_dashboard_queue_follows_permissions(client):
    login(client)
    r = client.get("/admin/")
    assert b"Draft invoices" in r.data
    assert b"Chats waiting" in r.data
    client.get("/auth/logout")

    login(client, email="staff@example.com")
    r = client.get("/admin/")
    assert r.status_code == 200
    assert b"My open tasks" in r.data
    assert b"Draft invoices" not in r.data


def test_entity_history(app):
    with session_scope(app) as s:
        admin = s.query(User).filter(User.email == "admin@example.com").one()
        record_event(s, actor=admin, action="project.create", entity_type="Project", entity_id="7", metadata={"code": "WR-001"})
        record_event(s, actor=admin, action="project.update", entity_type="Project", entity_id="7", reason="x" * 600)
        record_event(s, actor=None, action="project.create", entity_type="Project", entity_id="8")
    with session_scope(app) as s:
        history = entity_history(s, "Project", 7)
        assert [e.action for e in history] == ["project.update", "project.create"]
        assert len(history[0].reason) == 512
        assert event_metadata(history[1]) == {"code": "WR-001"}
        assert event_metadata(history[0]) == {}


def test_audit_filters_by_entity_type(client, app):
    login(client)
    with session_scope(app) as s:
        record_event(s, actor=None, action="menu.create", entity_type="Menu", entity_id="1")
    r = client.get("/admin/audit?entity_type=Menu")
    assert r.status_code == 200
    assert b"menu.create" in r.data
    assert b"auth.login<" not in r.data


def test_seed_only_is_idempotent(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'seed.db'}"
    engine = build_engine(url)
    Base.metadata.create_all(bind=engine)
    engine.dispose()
    monkeypatch.setenv("ADMIN_EMAIL", "Owner@Example.com")
    monkeypatch.setenv("ADMIN_PASSWORD", "first")

    seed_only(database_url=url)
    seed_only(database_url=url)

    with script_session(url) as s:
        owner = s.query(User).filter(User.email == "owner@example.com").one()
        assert [r.key for r in owner.roles] == ["admin"]
        assert s.query(Role).filter(Role.key == "admin").count() == 1
        assert s.query(AuditEvent).count() == 0


def test_release_database_url_guards():
    with pytest.raises(RuntimeError):
        release_database_url({})
    with pytest.raises(RuntimeError):
        release_database_url({"DATABASE_URL": "sqlite:///x.db", "ENV": "production"})
    assert release_database_url({"DATABASE_URL": " postgresql://db/app "}) == "postgresql://db/app"


def test_gunicorn_argv():
    argv = gunicorn_argv({"PORT": "9000", "WEB_CONCURRENCY": "4"})
    assert argv[:2] == ["gunicorn", "app.wsgi:app"]
    assert argv[argv.index("--bind") + 1] == "0.0.0.0:9000"
    assert argv[argv.index("--workers") + 1] == "4"
    assert argv[argv.index("--timeout") + 1] == "60"
    with pytest.raises(SystemExit):
        gunicorn_argv({"PORT": "70000"})
    with pytest.raises(SystemExit):
        gunicorn_argv({"PORT": "web"})


def test_load_config_reads_environment(monkeypatch):
    from app.backoffice.config import load_config

    monkeypatch.setenv("SECRET_KEY", "s3cret")
    monkeypatch.delenv("BROADCAST_SECRET", raising=False)
    monkeypatch.setenv("MAIL_PORT", "not-a-port")
    monkeypatch.setenv("MAX_UPLOAD_MB", "2")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("ENV", "production")

    cfg = load_config()
    assert cfg["MAIL_PORT"] == 587
    assert cfg["BROADCAST_SECRET"] == "s3cret"
    assert cfg["MAX_CONTENT_LENGTH"] == 2 * 1024 * 1024
    assert cfg["LOG_LEVEL"] == "DEBUG"
    assert cfg["SESSION_COOKIE_SECURE"] is True
