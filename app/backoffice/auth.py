"""Session sign-in for back-office staff."""
from __future__ import annotations

import uuid
from datetime import datetime

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, session, url_for
from werkzeug.security import check_password_hash

from app.backoffice.audit import record_event
from app.backoffice.db import db_session
from app.backoffice.models import User
from app.backoffice.security import SlidingWindowLimiter

bp = Blueprint("auth", __name__)

SESSION_USER_KEY = "user_id"
login_limiter = SlidingWindowLimiter(limit=5, window_seconds=300)


def _local_target(raw: str | None) -> str | None:
    target = (raw or "").strip()
    if target.startswith("/") and not target.startswith("//") and "\\" not in target:
        return target
    return None


def _active_user(s, user_id) -> User | None:
    try:
        user = s.get(User, int(user_id))
    except (TypeError, ValueError):
        return None
    return user if user and user.is_active else None


def load_current_user() -> None:
    """Resolve g.current_user from the session cookie and tag the request with an id."""
    g.request_id = g.get("request_id") or uuid.uuid4().hex
    g.current_user = None
    user_id = session.get(SESSION_USER_KEY)
    if user_id is None:
        return
    user = _active_user(db_session(), user_id)
    if user is None:
        # deactivated or deleted since the cookie was issued
        session.pop(SESSION_USER_KEY, None)
        return
    g.current_user = user


def authenticate(s, email: str, password: str) -> User | None:
    user = s.query(User).filter(User.email == email).one_or_none()
    if user and user.is_active and check_password_hash(user.password_hash, password):
        return user
    return None


@bp.get("/login")
def login_get():
    if g.get("current_user"):
        return redirect(url_for("admin.index"))
    return render_template("auth/login.html", next=_local_target(request.args.get("next")) or "")


@bp.post("/login")
def login_post():
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    target = _local_target(request.form.get("next"))
    client = request.remote_addr or "unknown"

    if not login_limiter.hit(client):
        current_app.logger.warning("Login rate limit reached for %s", client)
        flash("Too many login attempts. Please wait 5 minutes.", "danger")
        return redirect(url_for("auth.login_get"))

    s = db_session()
    user = authenticate(s, email, password)
    if user is None:
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email or None,
            reason="Invalid credentials",
        )
        s.commit()
        flash("Invalid credentials.", "danger")
        return redirect(url_for("auth.login_get", next=target))

    session.clear()
    session[SESSION_USER_KEY] = user.id
    user.last_login_at = datetime.utcnow()
    login_limiter.reset(client)
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
    s.commit()
    current_app.logger.info("User %s signed in (request_id=%s)", user.id, g.get("request_id"))
    return redirect(target or url_for("admin.index"))


@bp.get("/logout")
def logout():
    user = g.get("current_user")
    if user is not None:
        s = db_session()
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.pop(SESSION_USER_KEY, None)
    return redirect(url_for("routes.index"))
