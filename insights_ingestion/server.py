"""
HTTP trigger for insights ingestion.

    GET /api/insights/ad
    GET /api/insights/adset?date_preset=last_7d
    GET /api/insights/campaign?since=2025-01-01&until=2025-01-31

Each request is one independent run. Responses are JSON: {message, data}
on success (including an empty window), {error} otherwise.
"""

import json
import logging
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from insights_ingestion.errors import (
    ConfigError,
    IngestionError,
    IngestionTimeout,
    StorageError,
    UpstreamError,
)
from insights_ingestion.levels import LEVELS
from insights_ingestion.meta_ads import IngestionResult, load_insights

logger = logging.getLogger(__name__)

ROUTE_PREFIX = "/api/insights/"
WINDOW_PARAMS = ("date_preset", "since", "until")

ERROR_STATUS = [
    (ConfigError, 400),
    (UpstreamError, 502),
    (IngestionTimeout, 504),
    (StorageError, 500),
]

Runner = Callable[[str, Dict[str, Optional[str]]], IngestionResult]


def default_runner(level: str, window: Dict[str, Optional[str]]) -> IngestionResult:
    return load_insights(level, **window)


def status_for(error: IngestionError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


def handle_ingest(method: str, path: str, runner: Runner = default_runner) -> Tuple[int, Dict[str, Any]]:
    """
    Route one trigger request to a pipeline run.

    Args:
        method: HTTP method
        path: Request path including query string
        runner: Callable(level, window) returning an IngestionResult

    Returns:
        (status code, JSON payload)
    """
    if method != "GET":
        return 405, {"error": "Only GET requests allowed"}

    parsed = urlparse(path)
    if not parsed.path.startswith(ROUTE_PREFIX):
        return 404, {"error": f"Not found: {parsed.path}"}

    level = parsed.path[len(ROUTE_PREFIX):].strip("/")
    if level not in LEVELS:
        return 404, {"error": f"Unknown reporting level '{level}'. Expected one of: {', '.join(LEVELS)}"}

    query = parse_qs(parsed.query)
    window = {name: query[name][0] if name in query else None for name in WINDOW_PARAMS}

    try:
        result = runner(level, window)
    except IngestionError as e:
        status = status_for(e)
        logger.error(f"❌ {level} ingestion failed ({status}): {e}")
        return status, {"error": str(e)}
    except Exception as e:
        logger.exception(f"❌ {level} ingestion failed with unexpected error")
        return 500, {"error": str(e)}

    return 200, result.to_response()


class InsightsRequestHandler(BaseHTTPRequestHandler):
    runner: Runner = staticmethod(default_runner)

    def _respond(self, status: int, payload: Dict[str, Any]) -> None:
        body = json.dumps(payload, default=str).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        if status == 405:
            self.send_header("Allow", "GET")
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def _dispatch(self) -> None:
        status, payload = handle_ingest(self.command, self.path, type(self).runner)
        self._respond(status, payload)

    do_GET = _dispatch
    do_POST = _dispatch
    do_PUT = _dispatch
    do_PATCH = _dispatch
    do_DELETE = _dispatch
    do_HEAD = _dispatch
    do_OPTIONS = _dispatch

    def send_error(self, code: int, message: Optional[str] = None, explain: Optional[str] = None) -> None:
        # Methods without a do_* handler land here as 501
        if code == HTTPStatus.NOT_IMPLEMENTED and self.command:
            self._dispatch()
            return
        super().send_error(code, message, explain)

    def log_message(self, format: str, *args: Any) -> None:
        logger.info(f"{self.address_string()} - {format % args}")


def make_handler(runner: Runner) -> type:
    """Handler class bound to a specific runner."""
    return type("BoundInsightsRequestHandler", (InsightsRequestHandler,), {"runner": staticmethod(runner)})


def serve(host: str = "127.0.0.1", port: int = 8080, runner: Optional[Runner] = None) -> None:
    """Serve the trigger until interrupted."""
    handler = make_handler(runner) if runner is not None else InsightsRequestHandler
    server = ThreadingHTTPServer((host, port), handler)
    logger.info(f"Serving insights trigger on http://{host}:{port}{ROUTE_PREFIX}<level>")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.warning("⚠️  Server interrupted by user")
    finally:
        server.server_close()
