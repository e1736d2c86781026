"""Flask application factory for the file root server."""

from __future__ import annotations

import os
import time
from typing import Any, Dict, Optional

from flask import Flask, g, jsonify, request, send_from_directory
from werkzeug.exceptions import HTTPException

from routes_files import create_files_blueprint
from services.config import Settings
from services.logging_setup import (
    access_enabled as _access_enabled,
    access_logger as _get_access_logger,
    core_log as _core_log,
    core_logger as _get_core_logger,
    setup_logging,
)
from services.pathguard import PathResolver


SETTINGS_EXTENSION = "fileroot.settings"


def api_error(message: str, status: int = 400):
    """Return a JSON error response in the same format as the files blueprint."""
    payload: Dict[str, Any] = {"error": message}
    return jsonify(payload), status


def create_app(settings: Optional[Settings] = None, **overrides: Any) -> Flask:
    """Build the app.

    ``settings`` defaults to :meth:`Settings.from_env`; keyword overrides are
    applied on top (``create_app(root_dir=...)`` in tests).
    """
    settings = settings or Settings.from_env()
    if overrides:
        settings = settings.with_overrides(**overrides)

    setup_logging(settings.log_dir, core_level=settings.log_level)

    # The root is the only process-wide state; it must exist before serving.
    root = PathResolver(settings.root_dir).ensure_root()
    settings = settings.with_overrides(root_dir=root.path)

    static_dir = os.path.abspath(settings.static_dir) if settings.static_dir else None
    app = Flask(__name__, static_folder=static_dir, static_url_path="" if static_dir else None)
    app.extensions[SETTINGS_EXTENSION] = settings

    app.register_blueprint(create_files_blueprint(settings))

    if static_dir:
        @app.get("/")
        def index() -> Any:
            return send_from_directory(static_dir, "index.html")

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException) -> Any:
        if not (request.path or "").startswith("/api/"):
            return e
        code = (e.name or "error").strip().lower().replace(" ", "_")
        return api_error(code, e.code or 500)

    @app.errorhandler(Exception)
    def _unhandled_error(e: Exception) -> Any:
        _get_core_logger().exception(f"unhandled error | method={request.method}, path={request.path}")
        return api_error("internal_error", 500)

    @app.before_request
    def _access_log_before_request() -> None:
        g._fileroot_t0 = time.time()

    @app.after_request
    def _cors_headers(response):
        if settings.cors_origin and (request.path or "").startswith("/api/"):
            response.headers.setdefault("Access-Control-Allow-Origin", settings.cors_origin)
            response.headers.setdefault("Access-Control-Allow-Methods", "GET, POST, DELETE, OPTIONS")
            response.headers.setdefault("Access-Control-Allow-Headers", "Content-Type")
        return response

    @app.after_request
    def _access_log_after_request(response):
        if not _access_enabled():
            return response
        try:
            method = request.method or ""
            status = getattr(response, "status_code", 0) or 0
            client = request.headers.get("X-Forwarded-For") or request.remote_addr or ""
            line = f"{client} {method} {request.path} -> {status}"
            t0 = getattr(g, "_fileroot_t0", None)
            if t0:
                line += f" ({int((time.time() - float(t0)) * 1000.0)}ms)"
            _get_access_logger().info(line)
        except Exception:  # noqa: BLE001
            # Logging must never affect the response.
            pass
        return response

    _core_log("info", "fileroot ready", root=settings.root_dir, overwrite=settings.overwrite, max_upload_mb=settings.max_upload_mb)
    return app
