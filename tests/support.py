from __future__ import annotations

import os
import sys
import tempfile
import unittest
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
STUDIO_SRC = REPO_ROOT / "src"
if str(STUDIO_SRC) not in sys.path:
    sys.path.insert(0, str(STUDIO_SRC))

_DATA_DIR = tempfile.mkdtemp(prefix="studioctl-tests-")
os.environ.setdefault("STUDIOCTL_DATA_DIR", _DATA_DIR)
os.environ.setdefault(
    "STUDIOCTL_DATABASE_URI", f"sqlite:///{Path(_DATA_DIR) / 'studioctl.sqlite3'}"
)
os.environ.setdefault("STUDIOCTL_SOCKETIO_MESSAGE_QUEUE", "")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")

import core.db as core_db  # noqa: E402
from core.config import Config  # noqa: E402
from core.db import session_scope  # noqa: E402
from services import accounts  # noqa: E402
from web.panels.state import Principal  # noqa: E402

TEST_PASSWORD = "correct horse battery"


class DatabaseTestCase(unittest.TestCase):
    """Each test gets a fresh SQLite file behind ``core.db``."""

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self._orig_database_uri = Config.SQLALCHEMY_DATABASE_URI
        Config.SQLALCHEMY_DATABASE_URI = (
            f"sqlite:///{Path(self._tmp.name) / 'studioctl.sqlite3'}"
        )
        self._dispose_engine()
        core_db.init_engine(Config.SQLALCHEMY_DATABASE_URI)
        core_db.init_db()

    def tearDown(self) -> None:
        self._dispose_engine()
        Config.SQLALCHEMY_DATABASE_URI = self._orig_database_uri
        self._tmp.cleanup()

    def _dispose_engine(self) -> None:
        if core_db._engine is not None:
            core_db._engine.dispose()
        core_db._engine = None
        core_db.SessionLocal = None

    def create_principal(self, email: str, *, admin: bool = False) -> Principal:
        with session_scope() as session:
            user = accounts.create_user(
                session,
                email=email,
                password=TEST_PASSWORD,
                role="admin" if admin else "user",
            )
            return Principal(
                user_id=user.id, email=user.email, name=user.name, is_admin=user.is_admin
            )
