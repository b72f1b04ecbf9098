"""
Batcher — Structured Logging with Correlation IDs

Emits structured JSON log lines for every scheduling event. Components
never reach for a module-level logger: each one receives a
StructuredLogger in its constructor and derives children from it, so a
whole controller run shares one run_id.

Design decisions:
  - Transport: Python logging with JSON formatter
  - Schema: OTel-compatible (run_id, component, service.name)
  - Configurable log level: DEBUG (per-operation events), INFO (batches), WARNING

Usage:
    from infra.logging import StructuredLogger, configure_logging

    configure_logging(level="INFO")
    logger = StructuredLogger(component="controller", target="alpha")
    dispatcher = CapacityDispatcher(..., logger=logger.child("dispatcher"))
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter (OTel-compatible)
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """
    Formats log records as JSON lines.

    OTel semantic conventions used:
      - run_id: maps to OTel trace ID
      - service.name: "batcher"
      - service.version: from env
    """

    def __init__(self, service_name: str = "batcher"):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("BATCHER_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = "batcher",
) -> logging.Logger:
    """
    Configure the batcher logger with JSON output.

    Only the entry point calls this. Library code receives its
    StructuredLogger through constructors instead.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        service_name: Service name in log entries

    Returns:
        The configured root logger for batcher
    """
    logger = logging.getLogger("batcher")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Avoid duplicate handlers on reconfigure
    logger.handlers.clear()

    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith("batcher."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)  # Inherit from parent

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)

    logger.propagate = False
    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under batcher namespace."""
    if name:
        return logging.getLogger(f"batcher.{name}")
    return logging.getLogger("batcher")


def generate_run_id() -> str:
    """Generate an OTel-compatible trace ID (32 hex chars)."""
    return uuid.uuid4().hex


# ═══════════════════════════════════════════════════════════════════
# Structured Logger
# ═══════════════════════════════════════════════════════════════════

class StructuredLogger:
    """
    Structured logger injected into every scheduling component.

    Every entry carries the run_id of the controller run and the name of
    the component that emitted it.
    """

    def __init__(
        self,
        component: str = "",
        target: str = "",
        run_id: str | None = None,
    ):
        self.component = component
        self.target = target
        self.run_id = run_id or generate_run_id()
        self._logger = get_logger(component or "run")

    def child(self, component: str, target: str = "") -> StructuredLogger:
        """Logger for a sub-component; shares this logger's run_id."""
        return StructuredLogger(
            component=component,
            target=target or self.target,
            run_id=self.run_id,
        )

    def is_enabled_for(self, level: int) -> bool:
        return self._logger.isEnabledFor(level)

    def _base_fields(self) -> dict[str, Any]:
        fields = {
            "run_id": self.run_id,
            "component": self.component,
        }
        if self.target:
            fields["target"] = self.target
        return fields

    def _emit(self, level: int, action: str, **fields):
        """Emit a structured log entry."""
        if not self._logger.isEnabledFor(level):
            return
        structured = {**self._base_fields(), "action": action, **fields}
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=None,
        )
        record.structured = structured
        self._logger.handle(record)

    # ── Generic levels ──────────────────────────────────────────

    def debug(self, action: str, **fields) -> None:
        self._emit(logging.DEBUG, action, **fields)

    def info(self, action: str, **fields) -> None:
        self._emit(logging.INFO, action, **fields)

    def warning(self, action: str, **fields) -> None:
        self._emit(logging.WARNING, action, **fields)

    def error(self, action: str, **fields) -> None:
        self._emit(logging.ERROR, action, **fields)

    # ── Planner ─────────────────────────────────────────────────

    def on_template_built(
        self,
        target: str,
        variant: str,
        operations: list[dict[str, Any]],
        total_duration_ms: float,
        peak_capacity_usage: float,
    ) -> None:
        self._emit(
            logging.INFO, "template_built",
            target=target,
            variant=variant,
            operation_count=len(operations),
            total_duration_ms=round(total_duration_ms, 3),
            peak_capacity_usage=round(peak_capacity_usage, 3),
        )
        if self._logger.isEnabledFor(logging.DEBUG):
            self._emit(logging.DEBUG, "template_operations",
                       target=target, operations=operations)

    # ── Dispatcher ──────────────────────────────────────────────

    def on_operation_dispatched(
        self,
        operation_id: str,
        kind: str,
        unit_count: int,
        node_id: str,
        dry_run: bool,
    ) -> None:
        self._emit(
            logging.DEBUG, "operation_dispatched",
            operation_id=operation_id,
            kind=kind,
            unit_count=unit_count,
            node_id=node_id,
            dry_run=dry_run,
        )

    def on_operation_freed(self, operation_id: str, node_id: str, capacity_cost: float) -> None:
        self._emit(
            logging.DEBUG, "operation_freed",
            operation_id=operation_id,
            node_id=node_id,
            capacity_cost=capacity_cost,
        )

    def on_release_all(self, dispatched_count: int) -> None:
        self._emit(logging.INFO, "release_all", dispatched_count=dispatched_count)

    def on_terminate_failed(self, operation_id: str, handle: Any, error: str) -> None:
        self._emit(
            logging.WARNING, "terminate_failed",
            operation_id=operation_id,
            handle=handle,
            error=error[:500],
        )

    # ── Batch Manager ───────────────────────────────────────────

    def on_batch_started(self, batch_id: str, operation_count: int, delay_ms: float) -> None:
        self._emit(
            logging.DEBUG, "batch_started",
            batch_id=batch_id,
            operation_count=operation_count,
            delay_ms=delay_ms,
        )

    def on_operation_report(
        self,
        operation_id: str,
        kind: str,
        batch_id: str,
        remaining: int,
        efficacy: float | None,
        time_taken_ms: float,
    ) -> None:
        fields = {
            "operation_id": operation_id,
            "kind": kind,
            "batch_id": batch_id,
            "remaining": remaining,
            "time_taken_ms": time_taken_ms,
        }
        if efficacy is not None:
            fields["efficacy"] = round(efficacy, 5)
        self._emit(logging.DEBUG, "operation_report", **fields)

    def on_batch_finished(self, batch_id: str) -> None:
        self._emit(logging.DEBUG, "batch_finished", batch_id=batch_id)

    # ── Controller ──────────────────────────────────────────────

    def on_mode_change(self, mode: str, reason: str = "") -> None:
        self._emit(logging.INFO, "mode_change", mode=mode, reason=reason)

    def on_pipeline_status(
        self,
        batch_id: str,
        batches_finished: int,
        value_ratio: float,
        resistance_ratio: float,
    ) -> None:
        self._emit(
            logging.INFO, "pipeline_status",
            batch_id=batch_id,
            batches_finished=batches_finished,
            value_ratio=round(value_ratio, 5),
            resistance_ratio=round(resistance_ratio, 5),
        )
