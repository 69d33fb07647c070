"""
Field Closeout — Structured Logging with Correlation IDs

Emits JSON log lines for every completion-pipeline event. Each pipeline
run gets its own trace_id so all remote calls for one work order can be
correlated in the log stream.

Design decisions:
  - Transport: Python logging with a JSON formatter
  - Schema: OTel-compatible field names (trace_id, span_id, service.name)
  - Configurable level: DEBUG (payloads), INFO (steps), WARNING (failures)

Usage:
    from fieldengine.logging import PipelineLogger, configure_logging

    configure_logging(level="INFO")
    plog = PipelineLogger(work_id="WO-1001", kind="terminate")
    plog.on_step_start("certification")
    plog.on_step_end("certification", status="skipped")
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
import uuid
from datetime import datetime, timezone
from typing import Any

ROOT_LOGGER = "fieldops"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """
    Formats log records as JSON lines.

    Structured fields attached via ``extra={"structured": {...}}`` are
    merged into the top-level entry.
    """

    def __init__(self, service_name: str = ROOT_LOGGER):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("FO_VERSION", "0.1.0")

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

        return json.dumps(entry, default=str, ensure_ascii=False)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = ROOT_LOGGER,
    fmt: str = "json",
) -> logging.Logger:
    """
    Configure the fieldops logger.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        service_name: Service name in log entries
        fmt: "json" for JSON lines, "text" for a plain human format

    Returns:
        The configured root logger for fieldops
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Avoid duplicate handlers on reconfigure
    logger.handlers.clear()
    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(ROOT_LOGGER + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    if fmt == "text":
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
        ))
    else:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def configure_from_config(config: Any, stream: Any = None) -> logging.Logger:
    """Configure logging from a ConfigLoader (logging.level / logging.format)."""
    return configure_logging(
        level=str(config.get("logging.level", "INFO")),
        fmt=str(config.get("logging.format", "json")),
        stream=stream,
    )


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the fieldops namespace."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


def generate_trace_id() -> str:
    """Generate an OTel-compatible trace ID (32 hex chars)."""
    return uuid.uuid4().hex


def generate_span_id() -> str:
    """Generate an OTel-compatible span ID (16 hex chars)."""
    return uuid.uuid4().hex[:16]


# ═══════════════════════════════════════════════════════════════════
# Pipeline Logger
# ═══════════════════════════════════════════════════════════════════

class PipelineLogger:
    """
    Structured event logger for one completion-pipeline run.

    Every entry carries trace_id and work_id. Step events also carry
    a span_id so the start/end pair of one step can be joined.
    """

    def __init__(
        self,
        work_id: str = "",
        kind: str = "",
        trace_id: str | None = None,
    ):
        self.work_id = work_id
        self.kind = kind
        self.trace_id = trace_id or generate_trace_id()
        self._logger = get_logger("trace")
        self._step_spans: dict[str, str] = {}
        self._step_started: dict[str, float] = {}

    def _base_fields(self) -> dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "work_id": self.work_id,
            "kind": self.kind,
        }

    def _emit(self, level: int, action: str, **fields):
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

    # ── Run lifecycle ───────────────────────────────────────────

    def on_run_start(self) -> None:
        self._emit(logging.INFO, "run_start")

    def on_run_end(self, status: str, elapsed_s: float, steps_applied: int = 0) -> None:
        self._emit(
            logging.INFO, "run_end",
            status=status,
            elapsed_s=round(elapsed_s, 3),
            steps_applied=steps_applied,
        )

    def on_validation_failed(self, messages: list[str]) -> None:
        self._emit(logging.WARNING, "validation_failed", messages=messages)

    # ── Steps ───────────────────────────────────────────────────

    def on_step_start(self, step: str) -> None:
        span_id = generate_span_id()
        self._step_spans[step] = span_id
        self._step_started[step] = time.time()
        self._emit(logging.INFO, "step_start", step=step, span_id=span_id)

    def on_step_end(self, step: str, status: str, **fields) -> None:
        started = self._step_started.pop(step, None)
        if started is not None:
            fields["latency_ms"] = round((time.time() - started) * 1000, 1)
        level = logging.WARNING if status in ("failed", "blocked") else logging.INFO
        self._emit(
            level, "step_end",
            step=step,
            status=status,
            span_id=self._step_spans.get(step, ""),
            **fields,
        )

    def on_remote_call(self, operation: str, payload: dict[str, Any]) -> None:
        """Remote payloads are only logged at DEBUG."""
        self._emit(logging.DEBUG, "remote_call", operation=operation, payload=payload)

    def on_classification(self, step: str, classification: str, reason: str) -> None:
        self._emit(
            logging.WARNING, "failure_classified",
            step=step,
            classification=classification,
            reason=reason[:500],
        )

    def on_operator_decision(self, step: str, confirmed: bool) -> None:
        self._emit(logging.INFO, "operator_decision", step=step, confirmed=confirmed)
