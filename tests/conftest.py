import pytest
from werkzeug.security import generate_password_hash

from app.backoffice import create_app
from app.backoffice.auth import login_limiter
from app.backoffice.db import session_scope
from app.backoffice.models import Base, Role, User
from app.backoffice.modules.chat.public import message_limiter, session_limiter
from app.backoffice.modules.inquiries.public import submission_limiter
from scripts.init_db import seed_session

CSRF = "test-csrf-token"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("LOCAL_STORAGE_ROOT", str(tmp_path / "storage"))
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY", "MAIL_SERVER"):
        monkeypatch.delenv(k, raising=False)
    monkeypatch.setenv("CACHE_BACKEND", "simple")

    for limiter in (login_limiter, submission_limiter, session_limiter, message_limiter):
        limiter.clear()

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        seed_session(s)
        s.flush()
        admin_role = s.query(Role).filter(Role.key == "admin").one()
        staff_role = s.query(Role).filter(Role.key == "staff").one()
        admin = User(
            email="admin@example.com",
            name="Admin",
            password_hash=generate_password_hash("pw"),
            is_active=True,
        )
        admin.roles.append(admin_role)
        staff = User(
            email="staff@example.com",
            name="Staff Member",
            password_hash=generate_password_hash("pw"),
            is_active=True,
        )
        staff.roles.append(staff_role)
        s.add_all([admin, staff])

    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def login(client, email="admin@example.com", password="pw"):
    r = client.post("/auth/login", data={"email": email, "password": password}, follow_redirects=False)
    with client.session_transaction() as sess:
        sess["csrf_token"] = CSRF
    return r


def post(client, url, data=None, **kwargs):
    """POST a form with the pinned CSRF token."""
    payload = dict(data or {})
    payload.setdefault("csrf_token", CSRF)
    return client.post(url, data=payload, **kwargs)


def post_json(client, url, data=None):
    return client.post(url, json=data or {}, headers={"X-CSRF-Token": CSRF, "Accept": "application/json"})


def user_id(app, email: str) -> int:
    with session_scope(app) as s:
        return s.query(User).filter(User.email == email).one().id
