#!/usr/bin/env python3
import logging
import os
import subprocess
import sys
from pathlib import Path

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}

logger = logging.getLogger("studioctl.run")


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    if raw in TRUE_VALUES:
        return True
    if raw in FALSE_VALUES:
        return False
    return default


def _env_float(name: str, default: float, minimum: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        parsed = float(raw)
    except ValueError:
        return default
    if parsed < minimum:
        return default
    return parsed


def _configure_logging() -> None:
    level_name = os.getenv("STUDIOCTL_LOG_LEVEL", "INFO").strip().upper() or "INFO"
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_runtime_env(src_path: Path) -> dict[str, str]:
    env = os.environ.copy()
    env["PYTHONPATH"] = f"{src_path}{os.pathsep}{env.get('PYTHONPATH', '')}".strip(
        os.pathsep
    )
    return env


def _run_database_preflight() -> None:
    if not _env_flag("STUDIOCTL_DB_HEALTHCHECK_ENABLED", True):
        return

    from core.config import Config
    from core.db import run_startup_db_healthcheck

    run_startup_db_healthcheck(
        Config.SQLALCHEMY_DATABASE_URI,
        timeout_seconds=_env_float("STUDIOCTL_DB_HEALTHCHECK_TIMEOUT_SECONDS", 60.0, 0.0),
        interval_seconds=_env_float("STUDIOCTL_DB_HEALTHCHECK_INTERVAL_SECONDS", 2.0, 0.1),
    )


def _should_autostart(name: str, debug: bool) -> bool:
    if not _env_flag(name, _env_flag("CELERY_AUTOSTART", True)):
        return False
    if debug and os.getenv("WERKZEUG_RUN_MAIN") != "true":
        return False
    return True


def _celery(src_path: Path, repo_root: Path, *args: str) -> subprocess.Popen:
    command = [sys.executable, "-m", "celery", "-A", "services.celery_app:celery_app", *args]
    return subprocess.Popen(command, cwd=repo_root, env=_build_runtime_env(src_path))


def _start_celery_workers(src_path: Path, repo_root: Path, debug: bool) -> list[subprocess.Popen]:
    """One worker per configured queue; run execution and schedule ticks share them."""
    if not _should_autostart("CELERY_AUTOSTART", debug):
        return []

    from core.config import Config

    loglevel = os.getenv("CELERY_WORKER_LOGLEVEL", "info")
    workers = []
    for queue_name, concurrency in Config.CELERY_QUEUES.items():
        logger.info("Starting celery worker for %s (concurrency=%s)", queue_name, concurrency)
        workers.append(
            _celery(
                src_path,
                repo_root,
                "worker",
                f"--loglevel={loglevel}",
                f"--concurrency={concurrency}",
                f"--queues={queue_name}",
                f"--hostname={queue_name}@%h",
            )
        )
    return workers


def _start_celery_beat(src_path: Path, repo_root: Path, debug: bool) -> subprocess.Popen | None:
    if not _should_autostart("CELERY_BEAT_AUTOSTART", debug):
        return None

    from core.config import Config

    data_dir = Path(Config.DATA_DIR)
    logger.info("Starting celery beat (schedule tick every %ss)", Config.SCHEDULE_TICK_SECONDS)
    return _celery(
        src_path,
        repo_root,
        "beat",
        f"--loglevel={os.getenv('CELERY_BEAT_LOGLEVEL', 'info')}",
        f"--schedule={data_dir / 'celerybeat-schedule'}",
        f"--pidfile={data_dir / 'celerybeat.pid'}",
    )


def _terminate_process(process: subprocess.Popen | None) -> None:
    if process is None:
        return
    process.terminate()
    try:
        process.wait(timeout=10)
    except subprocess.TimeoutExpired:
        process.kill()


def _should_use_gunicorn(debug: bool) -> bool:
    raw = os.getenv("STUDIOCTL_USE_GUNICORN", "").strip().lower()
    if raw in TRUE_VALUES:
        return True
    if raw in FALSE_VALUES:
        return False
    return not debug


def _start_gunicorn(src_path: Path, repo_root: Path) -> subprocess.Popen:
    command = [
        sys.executable,
        "-m",
        "gunicorn",
        "-c",
        "python:web.gunicorn_config",
        "web.app:create_app()",
    ]
    return subprocess.Popen(
        command,
        cwd=repo_root,
        env=_build_runtime_env(src_path),
    )


def _run_flask_dev_server(host: str, port: int, debug: bool) -> int:
    from web.app import create_app
    from web.realtime import socketio

    app = create_app()
    socketio.run(app, host=host, port=port, debug=debug, allow_unsafe_werkzeug=True)
    return 0


def main() -> int:
    repo_root = Path(__file__).resolve().parent
    src_path = repo_root / "src"
    sys.path.insert(0, str(src_path))

    os.chdir(repo_root)
    _configure_logging()

    _run_database_preflight()

    host = os.getenv("FLASK_HOST", "0.0.0.0")
    port = int(os.getenv("FLASK_PORT", "5055"))
    debug = _env_flag("FLASK_DEBUG", False)
    workers = _start_celery_workers(src_path, repo_root, debug)
    beat = _start_celery_beat(src_path, repo_root, debug)
    web_process: subprocess.Popen | None = None
    try:
        if _should_use_gunicorn(debug):
            web_process = _start_gunicorn(src_path, repo_root)
            return web_process.wait()
        return _run_flask_dev_server(host, port, debug)
    except KeyboardInterrupt:
        if web_process is not None:
            _terminate_process(web_process)
        return 0
    finally:
        for worker in workers:
            _terminate_process(worker)
        _terminate_process(beat)


if __name__ == "__main__":
    raise SystemExit(main())
