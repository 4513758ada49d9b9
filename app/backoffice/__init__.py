import logging
import os
from decimal import Decimal, InvalidOperation

from dotenv import load_dotenv
from flask import Flask, flash, g, jsonify, redirect, render_template, request, url_for
from sqlalchemy import inspect as sa_inspect

from app.backoffice.admin import bp as admin_bp
from app.backoffice.auth import bp as auth_bp, load_current_user
from app.backoffice.config import load_config
from app.backoffice.db import init_db, teardown_db_session
from app.backoffice.modules.access.admin import bp as access_bp
from app.backoffice.modules.ai.admin import bp as ai_bp
from app.backoffice.modules.chat.admin import bp as chat_bp
from app.backoffice.modules.chat.public import bp as livechat_bp, broadcasting_bp
from app.backoffice.modules.cms.admin import bp as cms_bp, public_bp as menus_public_bp
from app.backoffice.modules.finance.admin import bp as finance_bp
from app.backoffice.modules.finance.banking import bp as banking_bp
from app.backoffice.modules.hr.admin import bp as hr_bp
from app.backoffice.modules.inquiries.admin import bp as inquiries_bp
from app.backoffice.modules.inquiries.public import bp as guest_bp
from app.backoffice.modules.integrations.admin import bp as integrations_bp
from app.backoffice.modules.projects.admin import bp as projects_bp
from app.backoffice.modules.support.admin import bp as support_bp
from app.backoffice.rbac import user_has_permission, wants_json
from app.backoffice.routes import bp as routes_bp
from app.backoffice.security import install_csrf_guard

logger = logging.getLogger(__name__)

# Login form and the public website widgets post without a session token.
CSRF_EXEMPT_PREFIXES = ("auth.", "guest.", "livechat.")
HEALTH_PATHS = ("/static/", "/health", "/healthz")
PUBLIC_JSON_PREFIXES = ("/guest/", "/chat/", "/menus/", "/broadcasting/")

BLUEPRINTS = (
    (routes_bp, None),
    (auth_bp, "/auth"),
    (admin_bp, "/admin"),
    (access_bp, "/admin"),
    (inquiries_bp, "/admin"),
    (integrations_bp, "/admin"),
    (projects_bp, "/admin"),
    (hr_bp, "/admin/hr"),
    (support_bp, "/admin/support"),
    (finance_bp, "/admin/finance"),
    (banking_bp, "/admin/finance"),
    (cms_bp, "/admin/cms"),
    (ai_bp, "/admin/ai"),
    (chat_bp, "/admin/chat"),
    (guest_bp, "/guest"),
    (livechat_bp, "/chat"),
    (menus_public_bp, None),
    (broadcasting_bp, None),
)


def _check_production(app: Flask) -> None:
    if (app.config.get("ENV") or "").strip().lower() not in ("prod", "production"):
        return
    url = str(app.config.get("DATABASE_URL") or "").strip()
    if not url:
        raise RuntimeError("DATABASE_URL is required in production.")
    if url.startswith("sqlite"):
        raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
    if str(app.config.get("SECRET_KEY") or "") in ("", "change-me"):
        raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")


def _warn_on_backend_gaps(app: Flask) -> None:
    cfg = app.config
    if cfg.get("STORAGE_BACKEND") == "s3":
        missing = [k for k in ("S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not cfg.get(k)]
        if missing:
            app.logger.error("Storage misconfigured, STORAGE_BACKEND=s3 without %s", ", ".join(missing))
    if cfg.get("CACHE_BACKEND") == "redis" and not cfg.get("REDIS_URL"):
        app.logger.error("Cache misconfigured, CACHE_BACKEND=redis without REDIS_URL")


def _register_template_helpers(app: Flask) -> None:
    @app.context_processor
    def _inject_user() -> dict:
        user = g.get("current_user")
        return {"current_user": user, "has_perm": lambda key: user_has_permission(user, key)}

    @app.template_filter("dateformat")
    def _dateformat(value, format: str = "%Y-%m-%d") -> str:
        if value is None:
            return "-"
        return value.strftime(format) if hasattr(value, "strftime") else str(value)

    @app.template_filter("money")
    def _money(value) -> str:
        if value is None or value == "":
            return "-"
        try:
            return f"{Decimal(str(value)):,.2f}"
        except InvalidOperation:
            return str(value)


def _register_error_handlers(app: Flask) -> None:
    def _json_expected() -> bool:
        return request.path.startswith(PUBLIC_JSON_PREFIXES) or wants_json()

    @app.errorhandler(403)
    def _forbidden(_e):
        missing = g.get("missing_permission")
        app.logger.warning(
            "Forbidden %s %s missing_permission=%s request_id=%s",
            request.method,
            request.path,
            missing,
            g.get("request_id"),
        )
        if _json_expected():
            return jsonify({"error": "Forbidden.", "missing_permission": missing}), 403
        return render_template("errors/403.html", missing_permission=missing), 403

    @app.errorhandler(404)
    def _not_found(_e):
        if _json_expected():
            return jsonify({"error": "Not found."}), 404
        return render_template("errors/404.html"), 404

    @app.errorhandler(413)
    def _too_large(_e):
        limit_mb = (app.config.get("MAX_CONTENT_LENGTH") or 0) // (1024 * 1024)
        if _json_expected():
            return jsonify({"error": f"Upload too large (limit {limit_mb} MB)."}), 413
        flash(f"File too large. Maximum size is {limit_mb}MB.", "danger")
        back = request.referrer
        if back and back.startswith(request.host_url):
            return redirect(back)
        return redirect(url_for("admin.index"))

    @app.errorhandler(500)
    def _server_error(_e):
        app.logger.exception("Unhandled error on %s (request_id=%s)", request.path, g.get("request_id"))
        if _json_expected():
            return jsonify({"error": "Internal server error."}), 500
        return render_template("errors/500.html"), 500


def _install_schema_guard(app: Flask) -> None:
    """Serve a maintenance page on /admin until `alembic upgrade head` has run.

    The check runs once, on the first signed-in admin request, so a fresh
    database can still be migrated after the workers boot.
    """
    state: dict[str, list[str] | None] = {"missing": None}

    @app.before_request
    def _schema_guard():
        if not request.path.startswith("/admin") or not g.get("current_user"):
            return None
        if state["missing"] is None:
            from app.backoffice.models import Base

            existing = set(sa_inspect(app.extensions["sqlalchemy_engine"]).get_table_names())
            state["missing"] = sorted(t for t in Base.metadata.tables if t not in existing)
            if state["missing"]:
                app.logger.error("Database schema is behind the models; missing tables: %s", ", ".join(state["missing"]))
        if state["missing"]:
            return render_template("errors/schema_out_of_date.html", missing=state["missing"]), 500
        return None


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    app.logger.setLevel(app.config.get("LOG_LEVEL") or "INFO")

    _check_production(app)
    init_db(app)
    _warn_on_backend_gaps(app)

    if hasattr(os, "register_at_fork"):
        # gunicorn forks after create_app; children must not share pooled connections
        os.register_at_fork(after_in_child=lambda: app.extensions["sqlalchemy_engine"].dispose())

    @app.before_request
    def _load_user():
        if request.path.startswith(HEALTH_PATHS):
            g.current_user = None
            return None
        return load_current_user()

    install_csrf_guard(app, exempt_prefixes=CSRF_EXEMPT_PREFIXES, skip_paths=HEALTH_PATHS)
    _install_schema_guard(app)
    app.teardown_appcontext(teardown_db_session)

    _register_template_helpers(app)
    _register_error_handlers(app)
    for blueprint, prefix in BLUEPRINTS:
        app.register_blueprint(blueprint, url_prefix=prefix)

    logger.info("Back office ready (env=%s, storage=%s)", app.config.get("ENV"), app.config.get("STORAGE_BACKEND"))
    return app
