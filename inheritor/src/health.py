from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

StatusProvider = Callable[[], dict[str, Any]]


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves probes, Prometheus metrics and a JSON view of the last passes."""

    ready_event: threading.Event
    leader_event: threading.Event | None
    status_provider: StatusProvider | None

    def _is_leader(self) -> bool:
        return self.leader_event is None or self.leader_event.is_set()

    def _respond(self, status: int, body: bytes = b"", content_type: str | None = None) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _readiness(self) -> None:
        ready = self.ready_event.is_set()
        leader = self._is_leader()
        body = f"ready={str(ready).lower()} leader={str(leader).lower()}".encode()
        self._respond(200 if ready and leader else 503, body)

    def _status(self) -> None:
        if self.status_provider is None:
            self._respond(404)
            return
        payload = {"leader": self._is_leader(), **self.status_provider()}
        self._respond(200, json.dumps(payload).encode(), "application/json")

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/leadz":
            if self._is_leader():
                self._respond(200, b"ok")
            else:
                self._respond(503, b"not leader")
        elif self.path == "/readyz":
            self._readiness()
        elif self.path == "/statusz":
            self._status()
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("inheritor.health").debug(fmt, *args)


def start_health_server(
    ready: threading.Event,
    port: int,
    leader: threading.Event | None = None,
    status_provider: StatusProvider | None = None,
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it.

    The handler state is bound as class attributes because the stdlib server
    instantiates handlers without constructor arguments.
    """
    handler_class = type(
        "_BoundHealthHandler",
        (_HealthHandler,),
        {
            "ready_event": ready,
            "leader_event": leader,
            "status_provider": staticmethod(status_provider) if status_provider else None,
        },
    )
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
