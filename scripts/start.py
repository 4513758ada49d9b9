#!/usr/bin/env python3
"""
Container entrypoint: run the release phase, then exec gunicorn in place of
this process so it receives the container's signals.

Environment: PORT (default 8080), WEB_CONCURRENCY (default 2),
GUNICORN_TIMEOUT (default 60), SKIP_RELEASE=1 to boot without migrating.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _int_env(environ, name: str, default: int, *, low: int, high: int) -> int:
    raw = (environ.get(name) or "").strip() or str(default)
    try:
        value = int(raw)
    except ValueError:
        raise SystemExit(f"{name} must be an integer, got {raw!r}.")
    if not low <= value <= high:
        raise SystemExit(f"{name} must be between {low} and {high}, got {value}.")
    return value


def gunicorn_argv(environ=os.environ) -> list[str]:
    port = _int_env(environ, "PORT", 8080, low=1, high=65535)
    workers = _int_env(environ, "WEB_CONCURRENCY", 2, low=1, high=64)
    timeout = _int_env(environ, "GUNICORN_TIMEOUT", 60, low=1, high=3600)
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{port}",
        "--workers", str(workers),
        "--timeout", str(timeout),
        "--preload",
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def main() -> None:
    argv = gunicorn_argv()
    if os.environ.get("SKIP_RELEASE") != "1":
        from scripts.release import run_release

        try:
            run_release()
        except Exception as e:
            print(f"[start] release failed, not starting web workers: {e}", flush=True)
            sys.exit(1)
    print(f"[start] {' '.join(argv)}", flush=True)
    os.execvp(argv[0], argv)


if __name__ == "__main__":
    main()
