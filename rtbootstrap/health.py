# -*- coding: utf-8 -*-
"""
Liveness reporting.

The listener answers on the health port (RUTORRENT_PORT + 1):

    GET /  or /healthz   200 {"status": "ok"} | 503 {"status": "unhealthy", "reason": ...}
    GET /metrics         Prometheus exposition

Each request gets a socket timeout so a stalled client cannot hold the
probe open. probe() is the matching client used by the healthcheck command.

The port accepts connections while unhealthy too: orchestrators must check
the HTTP status (or run `rtbootstrap healthcheck`), a bare TCP connect
proves nothing.
"""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Iterable, Optional, Sequence, Tuple

import requests

from .engine.process import ProcessSnapshot, ProcessState
from .metrics import SupervisorMetrics

logger = logging.getLogger("rtbootstrap.health")

DEFAULT_REQUEST_TIMEOUT_S = 2.0

SnapshotProvider = Callable[[], Sequence[ProcessSnapshot]]


@dataclass(frozen=True)
class HealthStatus:
    healthy: bool
    reason: str
    processes: Tuple[ProcessSnapshot, ...] = field(default_factory=tuple)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": "ok" if self.healthy else "unhealthy",
            "reason": self.reason,
            "processes": {
                p.name: {"state": p.state.value, "pid": p.pid, "restarts": p.restarts, "returncode": p.returncode}
                for p in self.processes
            },
        }


def check_liveness(snapshot: Iterable[ProcessSnapshot]) -> HealthStatus:
    """Healthy iff every required process is Running."""
    procs = tuple(snapshot)
    if not procs:
        return HealthStatus(False, "no supervised processes", procs)
    down = [p for p in procs if p.required and p.state is not ProcessState.RUNNING]
    if down:
        reason = "; ".join(f"{p.name} is {p.state.value}" for p in down)
        return HealthStatus(False, reason, procs)
    return HealthStatus(True, "ok", procs)


def _make_handler(provider: SnapshotProvider, metrics: Optional[SupervisorMetrics], timeout: float):
    class _HealthHandler(BaseHTTPRequestHandler):
        server_version = "rtbootstrap-health/1.0"
        protocol_version = "HTTP/1.1"

        def do_GET(self):  # noqa: N802
            path = self.path.split("?", 1)[0]
            if path in ("/", "/healthz"):
                status = check_liveness(provider())
                if metrics:
                    metrics.healthy.set(1 if status.healthy else 0)
                code = HTTPStatus.OK if status.healthy else HTTPStatus.SERVICE_UNAVAILABLE
                self._send(code, json.dumps(status.as_dict()).encode("utf-8"), "application/json; charset=utf-8")
                return
            if path == "/metrics" and metrics:
                metrics.healthy.set(1 if check_liveness(provider()).healthy else 0)
                body, ctype = metrics.exposition()
                self._send(HTTPStatus.OK, body, ctype)
                return
            self._send(HTTPStatus.NOT_FOUND, b'{"error": "not_found"}', "application/json; charset=utf-8")

        def log_message(self, format: str, *args: Any) -> None:  # silence
            return

        def _send(self, status: HTTPStatus, payload: bytes, content_type: str) -> None:
            self.send_response(status)
            self.send_header("content-type", content_type)
            self.send_header("content-length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)

    _HealthHandler.timeout = timeout
    return _HealthHandler


class HealthServer:
    def __init__(
        self,
        provider: SnapshotProvider,
        *,
        host: str = "0.0.0.0",
        port: int = 8081,
        metrics: Optional[SupervisorMetrics] = None,
        request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
    ) -> None:
        self.host = host
        self._requested_port = port
        self._handler = _make_handler(provider, metrics, request_timeout_s)
        self._httpd: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        if self._httpd is None:
            return self._requested_port
        return self._httpd.server_address[1]

    def start(self) -> "HealthServer":
        httpd = ThreadingHTTPServer((self.host, self._requested_port), self._handler)
        httpd.daemon_threads = True
        self._httpd = httpd
        self._thread = threading.Thread(target=httpd.serve_forever, name="health-http", daemon=True)
        self._thread.start()
        logger.info("health_server_started", extra={"host": self.host, "port": self.port})
        return self

    def stop(self) -> None:
        if self._httpd is None:
            return
        self._httpd.shutdown()
        self._httpd.server_close()
        if self._thread:
            self._thread.join(timeout=5)
        self._httpd = None
        self._thread = None
        logger.info("health_server_stopped")


def probe(host: str = "127.0.0.1", port: int = 8081, timeout: float = 3.0) -> HealthStatus:
    """Query a running health listener. Unreachable counts as unhealthy."""
    url = f"http://{host}:{port}/healthz"
    try:
        r = requests.get(url, timeout=timeout)
    except requests.RequestException as e:
        return HealthStatus(False, f"unreachable: {e.__class__.__name__}")
    try:
        body = r.json()
    except ValueError:
        body = {}
    reason = body.get("reason") or r.reason or str(r.status_code)
    return HealthStatus(r.status_code == HTTPStatus.OK, reason)
