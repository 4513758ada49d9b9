from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, text

from app.backoffice.cache import cache_from_config
from app.backoffice.mailer import mail_configured
from app.backoffice.models import User
from app.backoffice.storage import storage_from_config

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
WARNING = "warning"
ERROR = "error"

QUEUE_CONNECTIONS = ("sync", "database", "redis", "sqs")


def _result(status: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"status": status, "message": message, "details": details or {}}


def _timed(name: str, fn: Callable[[], dict[str, Any]]) -> dict[str, Any]:
    started = time.perf_counter()
    try:
        result = fn()
    except Exception as e:
        logger.warning("Integration check %s failed: %s", name, e)
        result = _result(ERROR, f"{name.capitalize()} check failed: {e}", {"error": type(e).__name__})
    result["response_time"] = round((time.perf_counter() - started) * 1000, 2)
    return result


def check_database(s: "Session") -> dict[str, Any]:
    def _run() -> dict[str, Any]:
        try:
            s.execute(text("SELECT 1"))
            user_count = s.query(func.count(User.id)).scalar() or 0
        except Exception:
            s.rollback()
            raise
        dialect = s.get_bind().dialect.name
        return _result(HEALTHY, "Database connection successful.", {"driver": dialect, "user_count": user_count})

    return _timed("database", _run)


def check_storage(config: dict) -> dict[str, Any]:
    def _run() -> dict[str, Any]:
        storage = storage_from_config(config)
        key = f"_healthcheck/{uuid.uuid4().hex}.txt"
        payload = f"healthcheck {time.time()}".encode("utf-8")
        storage.put_bytes(key, payload, content_type="text/plain")
        try:
            read_back = storage.read_bytes(key)
        finally:
            storage.delete(key)
        if read_back != payload:
            return _result(ERROR, "Storage read-back did not match written content.", {"key": key})
        backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
        return _result(HEALTHY, "Storage write/read/delete successful.", {"backend": backend})

    return _timed("storage", _run)


def check_cache(config: dict) -> dict[str, Any]:
    def _run() -> dict[str, Any]:
        cache = cache_from_config(config)
        key = f"healthcheck:{uuid.uuid4().hex}"
        value = str(time.time())
        cache.put(key, value, ttl_seconds=60)
        got = cache.get(key)
        cache.forget(key)
        if got != value:
            return _result(ERROR, "Cache read-back did not match written value.")
        if cache.get(key) is not None:
            return _result(WARNING, "Cache forget did not remove the key.")
        backend = (config.get("CACHE_BACKEND") or "simple").strip().lower()
        return _result(HEALTHY, "Cache put/get/forget successful.", {"backend": backend})

    return _timed("cache", _run)


def check_queue(config: dict) -> dict[str, Any]:
    """Configuration only; nothing consumes the queue in-process."""

    def _run() -> dict[str, Any]:
        connection = (config.get("QUEUE_CONNECTION") or "sync").strip().lower()
        details = {"connection": connection}
        if connection not in QUEUE_CONNECTIONS:
            return _result(ERROR, f"Unknown queue connection '{connection}'.", details)
        if connection == "sync":
            return _result(WARNING, "Queue runs synchronously (no worker configured).", details)
        if connection == "redis" and not config.get("REDIS_URL"):
            return _result(ERROR, "Redis queue selected but REDIS_URL is not set.", details)
        return _result(HEALTHY, f"Queue connection '{connection}' configured.", details)

    return _timed("queue", _run)


def check_email(config: dict) -> dict[str, Any]:
    """Configuration only; no message is sent."""

    def _run() -> dict[str, Any]:
        details = {
            "server": config.get("MAIL_SERVER") or None,
            "port": config.get("MAIL_PORT"),
            "from": config.get("MAIL_FROM"),
        }
        if not mail_configured(config):
            return _result(WARNING, "MAIL_SERVER is not set; outbound email is disabled.", details)
        if not config.get("MAIL_FROM"):
            return _result(ERROR, "MAIL_FROM is not set.", details)
        return _result(HEALTHY, "Mail configuration present.", details)

    return _timed("email", _run)


CHECKS = ("database", "storage", "cache", "queue", "email")


def run_check(name: str, s: "Session", config: dict) -> dict[str, Any]:
    if name == "database":
        return check_database(s)
    if name == "storage":
        return check_storage(config)
    if name == "cache":
        return check_cache(config)
    if name == "queue":
        return check_queue(config)
    if name == "email":
        return check_email(config)
    raise KeyError(name)


def run_all(s: "Session", config: dict) -> dict[str, dict[str, Any]]:
    return {name: run_check(name, s, config) for name in CHECKS}


def health_score(results: dict[str, dict[str, Any]]) -> int:
    """Percentage of healthy checks; warnings count half."""
    if not results:
        return 0
    points = 0.0
    for r in results.values():
        if r["status"] == HEALTHY:
            points += 1
        elif r["status"] == WARNING:
            points += 0.5
    return round(points / len(results) * 100)
