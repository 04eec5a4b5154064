"""HTTP surface of the relay (Flask).

Routes map one-to-one onto :class:`~ddns_relay.service.DDNSService`
operations. Request bodies above the configured cap are refused with 413 by
Flask before anything parses them; the rate limiter wraps the whole WSGI app.
"""

from __future__ import annotations

import logging
import socket
from typing import Any, Optional

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException
from werkzeug.serving import BaseWSGIServer, WSGIRequestHandler, make_server

from ddns_relay.errors import DDNSError
from ddns_relay.ratelimit import RateLimiter, RateLimitMiddleware
from ddns_relay.service import DDNSService

logger = logging.getLogger(__name__)


def _json_body() -> Any:
    # force: agents are not required to send a JSON content type.
    return request.get_json(force=True, silent=True)


def _error_response(message: str, status_code: int):
    response = jsonify({"status": "error", "message": message})
    response.status_code = status_code
    return response


def create_app(
    service: DDNSService,
    *,
    max_body_bytes: int = 1024 * 1024,
    rate_limiter: Optional[RateLimiter] = None,
) -> Flask:
    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = max_body_bytes
    app.config["DDNS_SERVICE"] = service

    @app.route("/update-dns", methods=["POST"])
    def update_dns():
        return jsonify(service.update_dns(_json_body()))

    @app.route("/manage-records", methods=["GET", "DELETE"])
    def manage_records():
        if request.method == "GET":
            records = service.list_records(
                request.args.get("username", ""), request.headers.get("Authorization", "")
            )
            return jsonify(records)
        return jsonify(service.delete_record(_json_body()))

    @app.route("/manage-key", methods=["GET", "POST"])
    def manage_key():
        if request.method == "GET":
            return jsonify(
                service.view_key(
                    request.args.get("username", ""), request.headers.get("Authorization", "")
                )
            )
        return jsonify(service.reset_key(_json_body()))

    @app.errorhandler(DDNSError)
    def handle_ddns_error(e: DDNSError):
        if e.status_code >= 500:
            logger.error(f"{request.method} {request.path} failed ({e.status_code}): {e}")
        else:
            logger.warning(f"{request.method} {request.path} rejected ({e.status_code}): {e}")
        return _error_response(e.public_message, e.status_code)

    @app.errorhandler(socket.timeout)
    def handle_stalled_client(e: OSError):
        logger.warning(f"{request.method} {request.path}: client stalled, dropping request: {e}")
        return _error_response("request timed out", 408)

    @app.errorhandler(HTTPException)
    def handle_http_error(e: HTTPException):
        return _error_response(e.description or e.name, e.code or 500)

    @app.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        logger.error(f"Unhandled error on {request.method} {request.path}: {e}", exc_info=True)
        return _error_response("internal server error", 500)

    if rate_limiter is not None:
        app.wsgi_app = RateLimitMiddleware(app.wsgi_app, rate_limiter)

    return app


def _request_handler(timeout_seconds: float) -> type:
    class TimeoutRequestHandler(WSGIRequestHandler):
        # Socket timeout for every read and write on the connection.
        timeout = timeout_seconds

    return TimeoutRequestHandler


def make_relay_server(
    app: Flask, host: str, port: int, *, timeout_seconds: float = 15.0
) -> BaseWSGIServer:
    """Build a thread-per-request WSGI server that drops connections stalled
    longer than ``timeout_seconds``."""
    return make_server(
        host, port, app, threaded=True, request_handler=_request_handler(timeout_seconds)
    )


def serve(app: Flask, host: str, port: int, *, timeout_seconds: float = 15.0) -> None:
    """Run the app until interrupted."""
    server = make_relay_server(app, host, port, timeout_seconds=timeout_seconds)
    logger.info(f"Listening on {host}:{port}")
    try:
        server.serve_forever()
    finally:
        server.server_close()
