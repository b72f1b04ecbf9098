"""
Batcher — Health Checks & Status Endpoint

Provides liveness, readiness and a status snapshot for a running
controller. Uses stdlib http.server so the status port needs nothing
beyond the interpreter.

Endpoints:
  /health  — process alive (always 200)
  /ready   — registered checks (capacity accounting, pipeline task)
  /startup — one-time checks (config valid)
  /status  — controller status snapshot

Usage:
    from infra.health import HealthChecker, run_health_server

    checker = HealthChecker()
    checker.register("capacity", capacity_check_fn)
    checker.set_status_provider(controller.status)

    server = run_health_server(checker, port=8080)
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from http.server import HTTPServer, BaseHTTPRequestHandler
from typing import Any, Callable

logger = logging.getLogger("batcher.health")


# ═══════════════════════════════════════════════════════════════════
# Check Result
# ═══════════════════════════════════════════════════════════════════

@dataclass
class CheckResult:
    """Result of a single health check."""
    name: str
    status: str          # "ok" | "fail"
    latency_ms: float
    detail: str = ""
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        d = {"status": self.status, "latency_ms": round(self.latency_ms, 1)}
        if self.detail:
            d["detail"] = self.detail
        if self.error:
            d["error"] = self.error
        return d


# ═══════════════════════════════════════════════════════════════════
# Health Checker
# ═══════════════════════════════════════════════════════════════════

# Type for check functions: () -> (bool, str)
# Returns (success, detail_message)
CheckFn = Callable[[], tuple[bool, str]]
StatusFn = Callable[[], dict[str, Any]]


class HealthChecker:
    """
    Central health check registry.

    Checks run on the HTTP server thread, so check functions must only
    read state through thread-safe accessors.
    """

    def __init__(self):
        self._checks: dict[str, CheckFn] = {}
        self._startup_checks: dict[str, CheckFn] = {}
        self._status_provider: StatusFn | None = None
        self._lock = threading.Lock()

    def register(self, name: str, check_fn: CheckFn) -> None:
        """Register a readiness check."""
        with self._lock:
            self._checks[name] = check_fn

    def register_startup(self, name: str, check_fn: CheckFn) -> None:
        """Register a startup check (run once)."""
        with self._lock:
            self._startup_checks[name] = check_fn

    def set_status_provider(self, provider: StatusFn) -> None:
        with self._lock:
            self._status_provider = provider

    def _run_check(self, name: str, fn: CheckFn) -> CheckResult:
        """Run a single check, converting exceptions into a failed result."""
        t0 = time.time()
        try:
            success, detail = fn()
            latency = (time.time() - t0) * 1000
            return CheckResult(
                name=name,
                status="ok" if success else "fail",
                latency_ms=latency,
                detail=detail,
            )
        except Exception as e:
            latency = (time.time() - t0) * 1000
            return CheckResult(
                name=name,
                status="fail",
                latency_ms=latency,
                error=str(e)[:200],
            )

    def _run_all(self, checks: dict[str, CheckFn]) -> dict[str, Any]:
        results = {}
        for name, fn in checks.items():
            results[name] = self._run_check(name, fn).to_dict()
        statuses = [r["status"] for r in results.values()]
        overall = "ok" if all(s == "ok" for s in statuses) else "fail"
        return {
            "status": overall,
            "checks": results,
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        }

    def check_health(self) -> dict[str, Any]:
        """Liveness check. Always ok if the process is running."""
        return {
            "status": "ok",
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        }

    def check_ready(self) -> dict[str, Any]:
        """
        Readiness check. Runs all registered checks.

        Returns:
            {
                "status": "ok" | "fail",
                "checks": {
                    "capacity": {"status": "ok", "latency_ms": 0.1},
                    "pipeline": {"status": "fail", "detail": "manager task exited"}
                }
            }
        """
        with self._lock:
            checks = dict(self._checks)
        return self._run_all(checks)

    def check_startup(self) -> dict[str, Any]:
        """Startup check. Same schema as check_ready()."""
        with self._lock:
            checks = dict(self._startup_checks)
        return self._run_all(checks)

    def status(self) -> dict[str, Any]:
        with self._lock:
            provider = self._status_provider
        if provider is None:
            return {"status": "unknown"}
        return provider()


# ═══════════════════════════════════════════════════════════════════
# HTTP Server
# ═══════════════════════════════════════════════════════════════════

class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler for health endpoints."""

    checker: HealthChecker = None  # Set by factory

    def do_GET(self):
        if self.path == "/health":
            self._respond(200, self.checker.check_health())
        elif self.path == "/ready":
            result = self.checker.check_ready()
            status_code = 200 if result["status"] == "ok" else 503
            self._respond(status_code, result)
        elif self.path == "/startup":
            result = self.checker.check_startup()
            status_code = 200 if result["status"] == "ok" else 503
            self._respond(status_code, result)
        elif self.path == "/status":
            self._respond(200, self.checker.status())
        else:
            self._respond(404, {"error": "Not found"})

    def _respond(self, code: int, body: dict):
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.end_headers()
        self.wfile.write(json.dumps(body, default=str).encode())

    def log_message(self, format, *args):
        # Suppress default stderr logging
        pass


def run_health_server(
    checker: HealthChecker,
    port: int = 8080,
    host: str = "127.0.0.1",
    daemon: bool = True,
) -> HTTPServer:
    """
    Start health check HTTP server in a background thread.

    Returns the server instance (call .shutdown() to stop).
    """
    handler_cls = type("Handler", (_HealthHandler,), {"checker": checker})
    server = HTTPServer((host, port), handler_cls)

    thread = threading.Thread(target=server.serve_forever, daemon=daemon)
    thread.start()

    logger.info("Status server started on %s:%d", host, server.server_port)
    return server
