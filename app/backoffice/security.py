"""Request hardening: per-process rate limiting and session-bound CSRF tokens."""
import secrets
import threading
import time
from collections import deque

from flask import Flask, jsonify, render_template, request, session

CSRF_SESSION_KEY = "csrf_token"
CSRF_HEADER = "X-CSRF-Token"
UNSAFE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


class SlidingWindowLimiter:
    """At most ``limit`` hits per key within ``window_seconds``.

    State lives in the worker process, so each gunicorn worker counts on its own.
    Keys with no hits left in the window are dropped, so the map only holds
    recently seen clients.
    """

    def __init__(self, limit: int, window_seconds: int, clock=time.monotonic) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._hits)

    def _prune(self, hits: deque[float], now: float) -> None:
        while hits and hits[0] <= now - self.window_seconds:
            hits.popleft()

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        for key in list(self._hits):
            self._prune(self._hits[key], now)
            if not self._hits[key]:
                del self._hits[key]

    def _recent(self, key: str, now: float) -> deque[float]:
        self._sweep(now)
        hits = self._hits.get(key)
        if hits is None:
            return deque()
        self._prune(hits, now)
        if not hits:
            del self._hits[key]
        return hits

    def _append(self, key: str, hits: deque[float], now: float) -> None:
        hits.append(now)
        self._hits[key] = hits

    def is_limited(self, key: str) -> bool:
        with self._lock:
            return len(self._recent(key, self._clock())) >= self.limit

    def record(self, key: str) -> None:
        now = self._clock()
        with self._lock:
            self._append(key, self._recent(key, now), now)

    def hit(self, key: str) -> bool:
        """Record an attempt; False when the key is already over its limit."""
        now = self._clock()
        with self._lock:
            hits = self._recent(key, now)
            if len(hits) >= self.limit:
                return False
            self._append(key, hits, now)
            return True

    def reset(self, key: str) -> None:
        with self._lock:
            self._hits.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._hits.clear()


def ensure_csrf_token() -> str:
    token = session.get(CSRF_SESSION_KEY)
    if not token:
        token = session[CSRF_SESSION_KEY] = secrets.token_urlsafe(32)
    return token


def submitted_csrf_token() -> str | None:
    token = request.headers.get(CSRF_HEADER) or request.form.get(CSRF_SESSION_KEY)
    if not token and request.is_json:
        body = request.get_json(silent=True)
        if isinstance(body, dict):
            token = body.get(CSRF_SESSION_KEY)
    return token


def validate_csrf() -> bool:
    token = submitted_csrf_token()
    expected = session.get(CSRF_SESSION_KEY)
    return bool(token and expected and secrets.compare_digest(str(token), str(expected)))


def install_csrf_guard(app: Flask, *, exempt_prefixes: tuple[str, ...], skip_paths: tuple[str, ...]) -> None:
    """Reject unsafe requests whose token does not match the session.

    Endpoints under ``exempt_prefixes`` (login form, public widgets) are rate
    limited instead of token checked.
    """

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(skip_paths):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method not in UNSAFE_METHODS:
            return None
        if (request.endpoint or "").startswith(exempt_prefixes) or validate_csrf():
            return None
        app.logger.warning("CSRF rejection on %s %s", request.method, request.path)
        message = "CSRF token missing or invalid."
        if request.is_json or request.accept_mimetypes.best == "application/json":
            return jsonify({"error": message}), 400
        return render_template("errors/400.html", message=message), 400

    @app.context_processor
    def _inject_csrf() -> dict:
        return {"csrf_token": ensure_csrf_token()}
