"""Environment-driven settings.

Every field of ``Settings`` is read from the environment variable of the same
name in upper case (``mail_port`` <- ``MAIL_PORT``); blank values fall back to
the field default.
"""
import os
from dataclasses import dataclass, fields
from datetime import timedelta

PRODUCTION_ENVS = ("prod", "production")


@dataclass(frozen=True)
class Settings:
    secret_key: str = "change-me"
    env: str = "development"
    database_url: str = "sqlite:///backoffice.db"
    log_level: str = "INFO"

    # bank statement CSVs and health-check objects
    storage_backend: str = "local"
    local_storage_root: str = ""
    s3_endpoint: str = ""
    s3_region: str = ""
    s3_bucket: str = ""
    s3_access_key_id: str = ""
    s3_secret_access_key: str = ""

    cache_backend: str = "simple"
    redis_url: str = ""
    queue_connection: str = "sync"

    mail_server: str = ""
    mail_port: int = 587
    mail_username: str = ""
    mail_password: str = ""
    mail_from: str = "no-reply@backoffice.local"
    inquiry_notify_email: str = ""

    # live chat channel signing; the secret defaults to SECRET_KEY
    broadcast_key: str = "backoffice"
    broadcast_secret: str = ""

    max_upload_mb: int = 10
    session_hours: int = 8

    @property
    def is_production(self) -> bool:
        return self.env.lower() in PRODUCTION_ENVS


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _coerce(raw: str, default):
    if isinstance(default, int):
        try:
            return int(raw)
        except ValueError:
            return default
    return raw


def load_settings() -> Settings:
    values = {}
    for f in fields(Settings):
        raw = _getenv(f.name.upper())
        if raw:
            values[f.name] = _coerce(raw, f.default)
    return Settings(**values)


def load_config() -> dict:
    """Flat mapping for ``app.config.from_mapping``."""
    s = load_settings()
    config = {f.name.upper(): getattr(s, f.name) for f in fields(Settings)}
    config["LOG_LEVEL"] = s.log_level.upper()
    config["BROADCAST_SECRET"] = s.broadcast_secret or s.secret_key
    config.update(
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE="Lax",
        SESSION_COOKIE_SECURE=s.is_production,
        PERMANENT_SESSION_LIFETIME=timedelta(hours=s.session_hours),
        MAX_CONTENT_LENGTH=s.max_upload_mb * 1024 * 1024,
    )
    return config
