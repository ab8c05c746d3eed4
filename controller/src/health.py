from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import generate_latest

WATCHER_SYNCING = "syncing"
WATCHER_SYNCED = "synced"
WATCHER_FAILED = "failed"

WatcherStates = Callable[[], Mapping[str, str]]


def _no_watchers() -> Mapping[str, str]:
    return {}


def _format_states(states: Mapping[str, str]) -> str:
    return " ".join(f"{kind}={state}" for kind, state in sorted(states.items()))


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves liveness, readiness and Prometheus metrics for the binding controller.

    ``/healthz`` fails once any watcher has stopped for good (access denied),
    so the kubelet restarts a controller that can no longer see its cluster.
    ``/readyz`` succeeds once every watcher finished its initial list and
    names the state of each watched kind in the body.
    """

    ready_event: threading.Event
    watcher_states: WatcherStates

    def _respond(self, status: int, body: str | bytes = b"", content_type: str | None = None) -> None:
        payload = body.encode() if isinstance(body, str) else body
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if payload:
            self.wfile.write(payload)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            states = self.watcher_states()
            failed = sorted(kind for kind, state in states.items() if state == WATCHER_FAILED)
            if failed:
                self._respond(503, "failed=" + ",".join(failed))
            else:
                self._respond(200, "ok")
        elif self.path == "/readyz":
            ready = self.ready_event.is_set()
            body = f"ready={'true' if ready else 'false'}"
            states = self.watcher_states()
            if states:
                body = f"{body} {_format_states(states)}"
            self._respond(200 if ready else 503, body)
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), "text/plain; version=0.0.4; charset=utf-8")
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("controller.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event, watcher_states: WatcherStates | None = None
) -> type[_HealthHandler]:
    """Return a handler class bound to the readiness event and watcher state source."""

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready

    _BoundHealthHandler.watcher_states = staticmethod(watcher_states or _no_watchers)  # type: ignore[assignment]
    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event, port: int, watcher_states: WatcherStates | None = None
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(ready, watcher_states)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
