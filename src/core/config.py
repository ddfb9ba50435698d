from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import quote_plus, urlsplit

REPO_ROOT = Path(__file__).resolve().parents[2]


def _ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= minimum else default


def _env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value >= minimum else default


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    text = value.strip()
    return text or default


def _env_path_prefix(name: str, default: str) -> str:
    value = _env_str(name, default).strip()
    if value == "/":
        return "/"
    return f"/{value.strip('/')}"


def _env_queues(name: str, default: str) -> dict[str, int]:
    """Parse ``queue:concurrency`` pairs, e.g. ``studioctl:4,studioctl.runs:2``."""
    queues: dict[str, int] = {}
    for item in _env_str(name, default).split(","):
        queue, _, limit = item.strip().partition(":")
        queue = queue.strip()
        if not queue:
            continue
        try:
            queues[queue] = max(int(limit), 1) if limit.strip() else 1
        except ValueError:
            queues[queue] = 1
    return queues


def _build_database_uri(data_dir: str) -> str:
    direct_uri = os.getenv("STUDIOCTL_DATABASE_URI", "").strip()
    if direct_uri:
        return direct_uri

    host = os.getenv("STUDIOCTL_POSTGRES_HOST", "").strip()
    port = os.getenv("STUDIOCTL_POSTGRES_PORT", "").strip()
    database = os.getenv("STUDIOCTL_POSTGRES_DB", "").strip()
    user = os.getenv("STUDIOCTL_POSTGRES_USER", "").strip()
    password = os.getenv("STUDIOCTL_POSTGRES_PASSWORD", "").strip()
    if all((host, port, database, user, password)):
        safe_user = quote_plus(user)
        safe_password = quote_plus(password)
        return (
            f"postgresql+psycopg://{safe_user}:{safe_password}@{host}:{port}/{database}"
        )
    return f"sqlite:///{Path(data_dir) / 'studioctl.sqlite3'}"


class Config:
    DATA_DIR = str(
        _ensure_dir(Path(os.getenv("STUDIOCTL_DATA_DIR", REPO_ROOT / "data")))
    )
    SQLALCHEMY_DATABASE_URI = _build_database_uri(DATA_DIR)
    DATABASE_POOL_SIZE = _env_int("STUDIOCTL_DATABASE_POOL_SIZE", 10, minimum=1)

    SECRET_KEY = os.getenv("FLASK_SECRET_KEY", "dev")
    API_PREFIX = _env_path_prefix("STUDIOCTL_API_PREFIX", "/api")
    PREFERRED_URL_SCHEME = os.getenv("STUDIOCTL_PREFERRED_URL_SCHEME", "http")
    PUBLIC_BASE_URL = _env_str("STUDIOCTL_PUBLIC_BASE_URL", "http://localhost:5055").rstrip(
        "/"
    )

    # Reverse proxy trust controls. Keep disabled unless explicitly enabled.
    PROXY_FIX_ENABLED = _env_bool("STUDIOCTL_PROXY_FIX_ENABLED", False)
    PROXY_FIX_X_FOR = _env_int("STUDIOCTL_PROXY_FIX_X_FOR", 1, minimum=0)
    PROXY_FIX_X_PROTO = _env_int("STUDIOCTL_PROXY_FIX_X_PROTO", 1, minimum=0)
    PROXY_FIX_X_HOST = _env_int("STUDIOCTL_PROXY_FIX_X_HOST", 1, minimum=0)
    PROXY_FIX_X_PORT = _env_int("STUDIOCTL_PROXY_FIX_X_PORT", 1, minimum=0)
    PROXY_FIX_X_PREFIX = _env_int("STUDIOCTL_PROXY_FIX_X_PREFIX", 1, minimum=0)

    CELERY_REDIS_HOST = os.getenv("CELERY_REDIS_HOST", "127.0.0.1")
    CELERY_REDIS_PORT = int(os.getenv("CELERY_REDIS_PORT", "6380"))
    CELERY_REDIS_BROKER_DB = os.getenv("CELERY_REDIS_BROKER_DB", "0")
    CELERY_REDIS_BACKEND_DB = os.getenv("CELERY_REDIS_BACKEND_DB", "1")
    _DEFAULT_CELERY_BROKER_URL = (
        f"redis://{CELERY_REDIS_HOST}:{CELERY_REDIS_PORT}/{CELERY_REDIS_BROKER_DB}"
    )
    _DEFAULT_CELERY_RESULT_BACKEND = (
        f"redis://{CELERY_REDIS_HOST}:{CELERY_REDIS_PORT}/{CELERY_REDIS_BACKEND_DB}"
    )
    CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", _DEFAULT_CELERY_BROKER_URL)
    _CELERY_RESULT_BACKEND_ENV = os.getenv("CELERY_RESULT_BACKEND")
    if _CELERY_RESULT_BACKEND_ENV is None and CELERY_BROKER_URL.startswith(
        "memory://"
    ):
        CELERY_RESULT_BACKEND = "cache+memory://"
    else:
        CELERY_RESULT_BACKEND = _CELERY_RESULT_BACKEND_ENV or _DEFAULT_CELERY_RESULT_BACKEND
    CELERY_QUEUES = _env_queues("STUDIOCTL_CELERY_QUEUES", "studioctl:6")
    CELERY_REVOKE_ON_CANCEL = _env_bool("CELERY_REVOKE_ON_CANCEL", False)

    SOCKETIO_REDIS_DB = _env_str("STUDIOCTL_SOCKETIO_REDIS_DB", CELERY_REDIS_BROKER_DB)
    _DEFAULT_SOCKETIO_MESSAGE_QUEUE = (
        f"redis://{CELERY_REDIS_HOST}:{CELERY_REDIS_PORT}/{SOCKETIO_REDIS_DB}"
    )
    # An explicitly empty value runs socket.io without a message queue.
    SOCKETIO_MESSAGE_QUEUE = os.getenv(
        "STUDIOCTL_SOCKETIO_MESSAGE_QUEUE",
        _DEFAULT_SOCKETIO_MESSAGE_QUEUE,
    ).strip()
    SOCKETIO_ASYNC_MODE = _env_str("STUDIOCTL_SOCKETIO_ASYNC_MODE", "threading")
    SOCKETIO_PATH = _env_str("STUDIOCTL_SOCKETIO_PATH", "socket.io")
    SOCKETIO_CORS_ALLOWED_ORIGINS = _env_str(
        "STUDIOCTL_SOCKETIO_CORS_ALLOWED_ORIGINS",
        "*",
    )
    SOCKETIO_PING_INTERVAL = _env_float(
        "STUDIOCTL_SOCKETIO_PING_INTERVAL",
        25.0,
        minimum=1.0,
    )
    SOCKETIO_PING_TIMEOUT = _env_float(
        "STUDIOCTL_SOCKETIO_PING_TIMEOUT",
        60.0,
        minimum=1.0,
    )

    OIDC_ISSUER = _env_str("STUDIOCTL_OIDC_ISSUER", "")
    OIDC_CLIENT_ID = _env_str("STUDIOCTL_OIDC_CLIENT_ID", "")

    PANELS_STRICT_EVENTS = _env_bool("STUDIOCTL_PANELS_STRICT_EVENTS", False)
    PIPELINE_REFRESH_SECONDS = _env_float(
        "STUDIOCTL_PIPELINE_REFRESH_SECONDS", 5.0, minimum=0.5
    )
    SCHEDULE_TICK_SECONDS = _env_float(
        "STUDIOCTL_SCHEDULE_TICK_SECONDS", 60.0, minimum=1.0
    )
    LLM_REQUEST_TIMEOUT_SECONDS = _env_float(
        "STUDIOCTL_LLM_REQUEST_TIMEOUT_SECONDS", 120.0, minimum=1.0
    )
    MCP_REQUEST_TIMEOUT_SECONDS = _env_float(
        "STUDIOCTL_MCP_REQUEST_TIMEOUT_SECONDS", 30.0, minimum=1.0
    )
    PANEL_SESSION_IDLE_SECONDS = _env_float(
        "STUDIOCTL_PANEL_SESSION_IDLE_SECONDS", 1800.0, minimum=0.0
    )
    CHAT_MAX_TOOL_ROUNDS = _env_int("STUDIOCTL_CHAT_MAX_TOOL_ROUNDS", 5, minimum=1)
    MIN_PASSWORD_LENGTH = 12


def _database_parts(uri: str) -> dict[str, object]:
    parts = urlsplit(uri)
    if parts.scheme.startswith("sqlite"):
        return {
            "backend": "sqlite",
            "host": None,
            "port": None,
            "database": parts.path.lstrip("/") or None,
        }
    return {
        "backend": parts.scheme.split("+", 1)[0] or None,
        "host": parts.hostname,
        "port": parts.port or 5432,
        "database": parts.path.lstrip("/") or None,
    }


@dataclass(frozen=True)
class ServerConfigSnapshot:
    """Read-only view of process configuration for the servers tab."""

    database_backend: str | None
    database_host: str | None
    database_port: int | None
    database_name: str | None
    database_pool_size: int
    queues: dict[str, int] = field(default_factory=dict)
    oidc_issuer: str | None = None
    oidc_client_id: str | None = None
    public_base_url: str = ""

    @classmethod
    def from_config(cls, config: type[Config] | object = Config) -> "ServerConfigSnapshot":
        database = _database_parts(str(getattr(config, "SQLALCHEMY_DATABASE_URI", "")))
        return cls(
            database_backend=database["backend"],
            database_host=database["host"],
            database_port=database["port"],
            database_name=database["database"],
            database_pool_size=int(getattr(config, "DATABASE_POOL_SIZE", 0) or 0),
            queues=dict(getattr(config, "CELERY_QUEUES", {}) or {}),
            oidc_issuer=str(getattr(config, "OIDC_ISSUER", "") or "") or None,
            oidc_client_id=str(getattr(config, "OIDC_CLIENT_ID", "") or "") or None,
            public_base_url=str(getattr(config, "PUBLIC_BASE_URL", "") or ""),
        )

    def to_payload(self) -> dict[str, object]:
        return {
            "database": {
                "backend": self.database_backend,
                "host": self.database_host or "—",
                "port": self.database_port,
                "database": self.database_name or "—",
                "pool_size": self.database_pool_size,
            },
            "queues": [
                {"name": name, "concurrency": limit}
                for name, limit in sorted(self.queues.items())
            ],
            "oidc": {
                "issuer": self.oidc_issuer or "Not configured",
                "client_id": self.oidc_client_id or "Not configured",
            },
            "public_base_url": self.public_base_url,
        }
