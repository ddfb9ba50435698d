from __future__ import annotations

import logging
import os
from multiprocessing import cpu_count

logger = logging.getLogger("gunicorn.error")


def _env(name: str) -> str:
    return os.getenv(f"STUDIOCTL_GUNICORN_{name}", "").strip()


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    try:
        value = int(_env(name))
    except ValueError:
        return default
    return value if value >= minimum else default


def _bind() -> str:
    explicit = _env("BIND")
    if explicit:
        return explicit
    host = os.getenv("FLASK_HOST", "").strip() or "0.0.0.0"
    port = os.getenv("FLASK_PORT", "").strip() or "5055"
    return f"{host}:{port}"


def _workers() -> int:
    # Panel sessions and their refresh timers live in process memory; more
    # than one worker needs sticky routing in front of gunicorn.
    requested = _env_int("WORKERS", 1)
    if requested > 1 and not _env("STICKY_SESSIONS"):
        logger.warning(
            "Ignoring STUDIOCTL_GUNICORN_WORKERS=%s without sticky sessions", requested
        )
        return 1
    return requested


bind = _bind()
workers = _workers()
worker_class = "gthread"
threads = _env_int("THREADS", max(4, min(16, cpu_count() * 2)))
timeout = _env_int("TIMEOUT", 120)
graceful_timeout = _env_int("GRACEFUL_TIMEOUT", 30)
keepalive = _env_int("KEEPALIVE", 5)
loglevel = _env("LOG_LEVEL") or os.getenv("STUDIOCTL_LOG_LEVEL", "info").lower()
accesslog = _env("ACCESS_LOG") or "-"
errorlog = _env("ERROR_LOG") or "-"
certfile = _env("CERTFILE") or None
keyfile = _env("KEYFILE") or None


def worker_exit(server, worker) -> None:
    from web.panels.sessions import store

    logger.info("Worker %s exiting; closing %s panel session(s)", worker.pid, len(store))
    store.clear()
