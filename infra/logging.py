"""
Caseflow — Structured Logging with Correlation IDs

Emits one JSON line per lifecycle event (transition attempt, footprint
acquisition, step completion, escalation sweep). Every entry produced
through a LifecycleLogger carries a correlation_id so a single transition
attempt can be followed from reservation to commit or rollback.

Entry schema:
  timestamp, level, component ("transitions", "workflow", ...),
  service.name, service.version, then either
    event + correlation_id + bound fields    (LifecycleLogger)
    message + lifecycle ids from ``extra``   (plain module loggers)

Usage:
    from infra.logging import LifecycleLogger, configure_logging

    configure_logging(level="INFO")
    log = LifecycleLogger("transitions", case_id="case_1f2e")
    log.info("footprint_acquired", signature="ab12...")

    # Child loggers keep the correlation id and add fields
    step_log = log.child(stage_instance_id="si_0a9b")

    # Module loggers attach ids through extra
    logger.info("Step closure completed", extra={"case_id": "case_1f2e"})
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any

ROOT_LOGGER = "caseflow"

# Record attributes lifted into the entry when a module logger passes them via extra
LIFECYCLE_FIELDS = (
    "tenant_id",
    "case_id",
    "stage_instance_id",
    "step_key",
    "signature",
    "task_id",
    "event_id",
)


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter
# ═══════════════════════════════════════════════════════════════════

def component_of(logger_name: str) -> str:
    """``caseflow.transitions`` → ``transitions``; foreign loggers keep their name."""
    prefix = ROOT_LOGGER + "."
    if logger_name.startswith(prefix):
        return logger_name[len(prefix):]
    return logger_name


class JSONFormatter(logging.Formatter):
    """
    Formats caseflow log records as JSON lines.

    Records emitted by a LifecycleLogger carry ``record.structured`` and
    are written as events; any other record keeps its rendered message
    and the lifecycle ids it was given through ``extra``.
    """

    def __init__(self, service_name: str = ROOT_LOGGER):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("CF_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "component": component_of(record.name),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        structured = getattr(record, "structured", None)
        if structured is not None:
            entry["event"] = record.msg
            entry.update(structured)
        else:
            entry["message"] = record.getMessage()
            for key in LIFECYCLE_FIELDS:
                value = getattr(record, key, None)
                if value not in (None, ""):
                    entry[key] = value

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
    service_name: str = ROOT_LOGGER,
) -> logging.Logger:
    """
    Configure the caseflow logger with JSON output.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        service_name: Service name in log entries

    Returns:
        The configured root logger for caseflow
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(ROOT_LOGGER + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def generate_correlation_id() -> str:
    """32 hex chars, one per transition attempt or sweep."""
    return uuid.uuid4().hex


# ═══════════════════════════════════════════════════════════════════
# Lifecycle Logger
# ═══════════════════════════════════════════════════════════════════

class LifecycleLogger:
    """
    Structured logger bound to a correlation id and a set of fixed fields.

    Each call emits an entry whose message is the action name and whose
    structured payload is ``{correlation_id, **bound, **fields}``.
    """

    def __init__(
        self,
        name: str,
        correlation_id: str | None = None,
        **bound: Any,
    ):
        self.name = name
        self.correlation_id = correlation_id or generate_correlation_id()
        self.bound = dict(bound)
        self._logger = logging.getLogger(f"{ROOT_LOGGER}.{name}")

    def child(self, **fields: Any) -> LifecycleLogger:
        """Same correlation id, extra bound fields."""
        return LifecycleLogger(
            self.name,
            correlation_id=self.correlation_id,
            **{**self.bound, **fields},
        )

    def _emit(self, level: int, action: str, /, exc_info: bool = False, **fields: Any):
        if not self._logger.isEnabledFor(level):
            return
        structured = {
            "correlation_id": self.correlation_id,
            **self.bound,
            **fields,
        }
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=sys.exc_info() if exc_info else None,
        )
        record.structured = structured
        self._logger.handle(record)

    def debug(self, action: str, **fields: Any) -> None:
        self._emit(logging.DEBUG, action, **fields)

    def info(self, action: str, **fields: Any) -> None:
        self._emit(logging.INFO, action, **fields)

    def warning(self, action: str, **fields: Any) -> None:
        self._emit(logging.WARNING, action, **fields)

    def error(self, action: str, **fields: Any) -> None:
        self._emit(logging.ERROR, action, **fields)

    def exception(self, action: str, **fields: Any) -> None:
        """ERROR entry carrying the exception currently being handled."""
        self._emit(logging.ERROR, action, exc_info=True, **fields)
