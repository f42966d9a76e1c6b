from __future__ import annotations

import atexit
import contextlib
import dataclasses
import logging
import signal
import threading
from typing import Any

from flask import Flask, request
from werkzeug.exceptions import HTTPException

from plantcare.blueprints.api import devices_api, health_api
from plantcare.config import load_config, setup_logging


def create_app(
    config_overrides: dict[str, Any] | None = None,
    *,
    container: Any = None,
    start_runtime: bool = False,
) -> Flask:
    """Build the Flask app around a ``ServiceContainer``.

    Args:
        config_overrides: ``AppConfig`` field values to replace (ignored when
            ``container`` is given).
        container: Pre-built container (tests inject one wired to fakes).
        start_runtime: Connect the broker and start the periodic jobs, and
            install the shutdown handlers.
    """
    if container is None:
        config = load_config()
        if config_overrides:
            config = dataclasses.replace(config, **config_overrides)
    else:
        config = container.config

    # Configure logging early so broker connect and subscriptions are visible.
    setup_logging(debug=config.DEBUG, log_dir=config.log_dir)

    flask_app = Flask(__name__)
    flask_app.config.update(config.as_flask_config())
    flask_app.json.sort_keys = False

    if container is None:
        from plantcare.services.container import ServiceContainer

        container = ServiceContainer.build(config)
    flask_app.config["CONTAINER"] = container

    @flask_app.errorhandler(Exception)
    def _handle_unhandled(exc):
        if not request.path.startswith("/api/"):
            raise exc
        from plantcare.domain.exceptions import PlantCareError
        from plantcare.utils.http import error_response, safe_error

        if isinstance(exc, HTTPException):
            status = int(exc.code or 500)
            if status >= 500:
                return safe_error(exc, status, context="http-exception")
            return error_response(exc.description or "Request failed", status)

        if isinstance(exc, PlantCareError):
            status = exc.http_status
            if status >= 500:
                return safe_error(exc, status, context=type(exc).__name__)
            return error_response(str(exc) or "Request failed", status)

        return safe_error(exc, 500, context="unhandled")

    flask_app.register_blueprint(health_api)
    flask_app.register_blueprint(devices_api)

    for bp_name in flask_app.blueprints:
        logging.info(" Registered blueprint: %s", bp_name)

    if start_runtime:
        container.start()
        _install_shutdown_handlers(container)
    else:
        logging.info("Skipping runtime start (start_runtime=False)")

    logging.getLogger(__name__).info("PlantCare application initialized successfully.")
    return flask_app


def _install_shutdown_handlers(container: Any) -> None:
    shutdown_lock = threading.Lock()
    shutdown_done = False

    def _graceful_shutdown(reason: str = "unknown") -> None:
        nonlocal shutdown_done
        with shutdown_lock:
            if shutdown_done:
                return
            shutdown_done = True
        logging.info("Graceful shutdown initiated (%s)", reason)
        try:
            container.shutdown()
        except Exception as exc:
            logging.warning("Error during graceful shutdown: %s", exc)

    def _signal_handler(signum: int, _frame: object) -> None:
        sig_name = signal.Signals(signum).name
        logging.info("Received %s, shutting down", sig_name)
        _graceful_shutdown(sig_name)
        raise SystemExit(0)

    # Normal interpreter exit
    atexit.register(_graceful_shutdown, "atexit")

    # SIGINT=Ctrl-C, SIGTERM=container/systemd stop
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(OSError, ValueError):
            signal.signal(sig, _signal_handler)
