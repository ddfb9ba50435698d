from __future__ import annotations

import logging

from flask import Flask
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from core.config import Config
from core.db import init_db, init_engine
from web.realtime import init_socketio
from web.views import bp as studio_bp

logger = logging.getLogger(__name__)


class _PrefixedSocketIOPath:
    """Rewrite ``<api prefix>/<socket.io path>`` requests to the socket.io path."""

    def __init__(self, app, *, prefixed_path: str, socketio_path: str) -> None:
        self._app = app
        self._prefixed_path = prefixed_path
        self._socketio_path = socketio_path

    def __call__(self, environ, start_response):
        path = environ.get("PATH_INFO") or ""
        rest = path[len(self._prefixed_path) :]
        if path.startswith(self._prefixed_path) and (not rest or rest.startswith("/")):
            environ["PATH_INFO"] = self._socketio_path + rest
        return self._app(environ, start_response)


def _wrap_wsgi(app: Flask) -> None:
    config = app.config
    api_prefix = config["API_PREFIX"]
    socketio_path = "/" + (config["SOCKETIO_PATH"] or "socket.io").strip("/")
    if api_prefix != "/" and not socketio_path.startswith(f"{api_prefix}/"):
        # The frontend reaches everything, socket.io included, through the API prefix.
        app.wsgi_app = _PrefixedSocketIOPath(
            app.wsgi_app,
            prefixed_path=api_prefix + socketio_path,
            socketio_path=socketio_path,
        )
    if config["PROXY_FIX_ENABLED"]:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=config["PROXY_FIX_X_FOR"],
            x_proto=config["PROXY_FIX_X_PROTO"],
            x_host=config["PROXY_FIX_X_HOST"],
            x_port=config["PROXY_FIX_X_PORT"],
            x_prefix=config["PROXY_FIX_X_PREFIX"],
        )


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(HTTPException)
    def _http_error(exc: HTTPException):
        return {"error": exc.description}, exc.code

    @app.errorhandler(Exception)
    def _unhandled_error(exc: Exception):
        logger.exception("Unhandled error")
        return {"error": "Internal server error."}, 500


def _register_blueprints(app: Flask) -> None:
    app.register_blueprint(studio_bp)
    api_prefix = app.config["API_PREFIX"]
    if api_prefix != "/":
        app.register_blueprint(studio_bp, url_prefix=api_prefix, name="studio_api")


def create_app() -> Flask:
    app = Flask(__name__, template_folder=None, static_folder=None)
    app.config.from_object(Config)
    _wrap_wsgi(app)
    init_socketio(app)

    init_engine(app.config["SQLALCHEMY_DATABASE_URI"])
    init_db()

    _register_error_handlers(app)
    _register_blueprints(app)
    logger.info("studioctl app ready api_prefix=%s", app.config["API_PREFIX"])
    return app
