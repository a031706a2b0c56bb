"""Status endpoints for the initializer pod.

``/healthz`` answers as long as the process serves HTTP.  ``/readyz`` turns
200 only after the pod source finished its first uninitialized-inclusive
listing, so a rollout does not count a replica that cannot yet see pending
pods.  ``/metrics`` renders the default Prometheus registry.
"""

from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


class _StatusHandler(BaseHTTPRequestHandler):
    pods_listed: threading.Event

    def _reply(self, status: int, body: bytes = b"", content_type: str = "text/plain") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._reply(200, b"ok")
        elif self.path == "/readyz":
            if self.pods_listed.is_set():
                self._reply(200, b"pods listed")
            else:
                self._reply(503, b"waiting for first pod list")
        elif self.path == "/metrics":
            self._reply(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._reply(404, b"not found")

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_health_handler(ready: threading.Event) -> type[_StatusHandler]:
    """Bind *ready* (set by the pod source after its first listing) to a handler class."""
    return type("_BoundStatusHandler", (_StatusHandler,), {"pods_listed": ready})


def start_health_server(ready: threading.Event, port: int) -> ThreadingHTTPServer:
    """Serve the status endpoints on *port* from a daemon thread."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_health_handler(ready))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="status-http", daemon=True).start()
    LOGGER.info("Status endpoints listening on :%d", port)
    return server
