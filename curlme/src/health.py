from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)

SyncVersionFn = Callable[[], "str | None"]


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz``, ``/readyz`` and ``/metrics`` for the controller.

    Readiness follows the informer cache: the pod is ready once the initial
    ConfigMap list has been mirrored, and the body names the resource version
    that sync reached.
    """

    ready_event: threading.Event
    sync_version: SyncVersionFn | None

    def _respond(self, status: int, body: bytes = b"", content_type: str | None = None) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _liveness(self) -> None:
        self._respond(200, b"ok")

    def _readiness(self) -> None:
        if not self.ready_event.is_set():
            self._respond(503, b"synced=false")
            return
        body = "synced=true"
        version = self.sync_version() if self.sync_version is not None else None
        if version:
            body = f"{body} resourceVersion={version}"
        self._respond(200, body.encode())

    def _metrics(self) -> None:
        self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)

    _ROUTES: dict[str, Callable[[_HealthHandler], None]] = {
        "/healthz": _liveness,
        "/readyz": _readiness,
        "/metrics": _metrics,
    }

    def do_GET(self) -> None:
        route = self._ROUTES.get(self.path.split("?", 1)[0])
        if route is None:
            self._respond(404)
            return
        route(self)

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_health_handler(
    ready: threading.Event, sync_version: SyncVersionFn | None = None
) -> type[_HealthHandler]:
    """Bind the readiness event and sync-version lookup onto a handler class.

    ``ThreadingHTTPServer`` builds handlers without extra arguments, so the
    state lives on a per-server subclass.
    """

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready

    # Assigned outside the class body so the callable is not bound as a method.
    _BoundHealthHandler.sync_version = staticmethod(sync_version) if sync_version else None  # type: ignore[assignment]
    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event, port: int, sync_version: SyncVersionFn | None = None
) -> ThreadingHTTPServer:
    """Serve health and metrics on ``port`` from a daemon thread."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_health_handler(ready, sync_version))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health", daemon=True).start()
    LOGGER.info("Health server listening on :%d", port)
    return server
