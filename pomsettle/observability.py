"""
Proof-of-Money Observability

Structured logging and operator audit trail for the settlement engine.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                    Settlement Code                       │
    │  logger.info("msg", subnet_id=x)   audit.alert(...)      │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │              SettlementLogger / AuditLogger              │
    │  Correlation IDs, component tags, hash-chained alerts    │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │           logging.Logger + StructuredHandler             │
    └─────────────────────────────────────────────────────────┘

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextvars
import hashlib
import json
import logging
import sys
import threading
import time
import traceback
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, TypeVar

# Context variable for settlement-scoped correlation
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)


class LogLevel(Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class Component(Enum):
    """Settlement engine components for categorization."""
    LEDGER = "ledger"
    STATE_ROOT = "state_root"
    POM = "pom"
    COMMITMENT = "commitment"
    PLANNER = "planner"
    ORCHESTRATOR = "orchestrator"
    REPLAY = "replay"
    FX = "fx"
    SNAPSHOT = "snapshot"
    EXECUTOR = "executor"
    NETWORK = "network"
    STORE = "store"
    CONFIG = "config"
    CLI = "cli"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    component: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class StructuredHandler(logging.Handler):
    """Logging handler that outputs one JSON object per line."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                correlation_id=correlation_id_var.get(),
                component=getattr(record, "component", ""),
                operation=getattr(record, "operation", ""),
                duration_ms=getattr(record, "duration_ms", None),
                error_code=getattr(record, "error_code", ""),
                context=getattr(record, "context", {}),
            )

            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            stream = self.stream if self.stream is not None else sys.stderr
            stream.write(event.to_json() + "\n")
            stream.flush()
        except Exception:
            self.handleError(record)


class SettlementLogger:
    """
    Structured logger for settlement components.

    Every event carries the component tag and the correlation id of the
    settlement task that produced it.
    """

    def __init__(
        self,
        name: str,
        component: Component,
        level: Optional[LogLevel] = None,
    ):
        self.name = name
        self.component = component
        self._logger = logging.getLogger(f"pomsettle.{component.value}.{name}")
        if level is not None:
            self._logger.setLevel(getattr(logging, level.value.upper()))

        root = logging.getLogger("pomsettle")
        if not any(isinstance(h, StructuredHandler) for h in root.handlers):
            root.addHandler(StructuredHandler())
            if root.level == logging.NOTSET:
                root.setLevel(logging.INFO)

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        extra = {
            "component": self.component.value,
            "operation": operation,
            "error_code": error_code,
            "duration_ms": duration_ms,
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

    def error(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def critical(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._log(logging.CRITICAL, message, error_code=error_code, exc_info=exc_info, **context)

    def operation(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        **context: Any,
    ) -> None:
        """Log an operation completion."""
        level = logging.INFO if success else logging.WARNING
        status = "completed" if success else "failed"
        self._log(
            level,
            f"Operation {name} {status}",
            operation=name,
            duration_ms=duration_ms,
            **context,
        )


def configure_logging(level: str = "info", fmt: str = "json", stream: Any = None) -> None:
    """Apply log level and format to the package root logger."""
    root = logging.getLogger("pomsettle")
    root.setLevel(getattr(logging, level.upper()))
    for handler in list(root.handlers):
        root.removeHandler(handler)
    if fmt == "json":
        root.addHandler(StructuredHandler(stream))
    else:
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        root.addHandler(handler)


def generate_correlation_id() -> str:
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    """Set the correlation ID for the current context."""
    return correlation_id_var.set(correlation_id)


def reset_correlation_id(token: contextvars.Token) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str:
    """Get the current correlation ID, creating one if unset."""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


def get_logger(name: str, component: Component) -> SettlementLogger:
    return SettlementLogger(name, component)


T = TypeVar("T")


def timed_operation(
    logger: SettlementLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            success = True
            try:
                return func(*args, **kwargs)
            except Exception:
                success = False
                raise
            finally:
                duration_ms = (time.monotonic() - start) * 1000
                logger.operation(operation_name, duration_ms, success)
        return wrapper
    return decorator


# =============================================================================
# OPERATOR AUDIT TRAIL
# =============================================================================

@dataclass
class AuditEvent:
    """Audit event for settlement decisions and operator alerts."""
    event_id: str
    timestamp: str
    actor: str
    action: str
    resource_type: str
    resource_id: str
    outcome: str  # success, failure, halted
    severity: str = "info"
    correlation_id: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    event_hash: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AuditLogger:
    """
    Tamper-evident audit trail with hash chaining.

    Halts are recorded here as operator alerts so the discrepancy survives
    independently of ordinary log retention.
    """

    GENESIS = "genesis"

    def __init__(self, logger: Optional[SettlementLogger] = None, actor: str = "pomsettle"):
        self._logger = logger or get_logger("audit", Component.ORCHESTRATOR)
        self._actor = actor
        self._last_hash: str = self.GENESIS
        self._events: List[AuditEvent] = []
        self._lock = threading.Lock()

    @staticmethod
    def _compute_hash(event: AuditEvent, previous: str) -> str:
        body = event.to_dict()
        body.pop("event_hash", None)
        data = json.dumps(body, sort_keys=True, default=str) + previous
        return hashlib.sha256(data.encode()).hexdigest()

    def log(
        self,
        action: str,
        resource_type: str,
        resource_id: str,
        outcome: str,
        severity: str = "info",
        **details: Any,
    ) -> AuditEvent:
        event = AuditEvent(
            event_id=uuid.uuid4().hex,
            timestamp=datetime.now(timezone.utc).isoformat(),
            actor=self._actor,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            outcome=outcome,
            severity=severity,
            correlation_id=correlation_id_var.get(),
            details=details,
        )

        with self._lock:
            event.event_hash = self._compute_hash(event, self._last_hash)
            self._last_hash = event.event_hash
            self._events.append(event)

        log = self._logger.critical if severity == "critical" else self._logger.info
        log(
            f"AUDIT: {action} on {resource_type}/{resource_id}: {outcome}",
            operation="audit",
            **event.to_dict(),
        )
        return event

    def alert(self, action: str, resource_id: str, **details: Any) -> AuditEvent:
        """Record a halt that requires operator reconciliation."""
        return self.log(action, "settlement", resource_id, "halted", severity="critical", **details)

    @property
    def events(self) -> List[AuditEvent]:
        with self._lock:
            return list(self._events)

    def verify_chain(self) -> bool:
        """Recompute the hash chain over every recorded event."""
        with self._lock:
            previous = self.GENESIS
            for event in self._events:
                if self._compute_hash(event, previous) != event.event_hash:
                    return False
                previous = event.event_hash
            return True
