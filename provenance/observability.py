"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging with operation/actor context
- Per-operation context (which mutation, which caller)
- Metrics collection (append latency, fact counts, rejections)
- Health check utilities

Configuration:
- PROVENANCE_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- PROVENANCE_LOG_FORMAT: json, text (default: json in production)
- PROVENANCE_PRODUCTION: Enable production mode

Usage:
    from provenance.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Product registered", product_id=product.id, producer=caller)
"""

import json
import logging
import os
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Generator, Optional

# Context variables for the mutation in flight
operation_var: ContextVar[str] = ContextVar("operation", default="")
actor_var: ContextVar[str] = ContextVar("actor", default="")
correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")


# ============================================================
# CONFIGURATION
# ============================================================

def _is_production() -> bool:
    return os.environ.get("PROVENANCE_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level_str = os.environ.get("PROVENANCE_LOG_LEVEL", "INFO").upper()
    levels = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return levels.get(level_str, logging.INFO)


def _use_json_logging() -> bool:
    format_str = os.environ.get("PROVENANCE_LOG_FORMAT", "").lower()
    if format_str == "json":
        return True
    if format_str == "text":
        return False
    return _is_production()


# ============================================================
# STRUCTURED LOGGING
# ============================================================

_RESERVED_RECORD_FIELDS = frozenset({
    "name", "msg", "args", "created", "levelname", "levelno",
    "pathname", "filename", "module", "lineno", "funcName",
    "exc_info", "exc_text", "stack_info", "message", "msecs",
    "relativeCreated", "thread", "threadName", "process",
    "processName", "taskName",
})


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {
        "timestamp": "2024-01-15T10:30:00.000000+00:00",
        "level": "INFO",
        "logger": "provenance.core.ledger",
        "message": "Product registered",
        "operation": "register",
        "actor": "0xabc...",
        "product_id": 1,
        ...extra fields...
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        operation = operation_var.get()
        if operation:
            log_data["operation"] = operation

        actor = actor_var.get()
        if actor:
            log_data["actor"] = actor

        correlation_id = correlation_id_var.get()
        if correlation_id:
            log_data["correlation_id"] = correlation_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_FIELDS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                log_data[key] = value
            except (TypeError, ValueError):
                log_data[key] = str(value)

        return json.dumps(log_data)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for development."""

    def format(self, record: logging.LogRecord) -> str:
        prefix = ""
        operation = operation_var.get()
        correlation_id = correlation_id_var.get()
        if operation and correlation_id:
            prefix = f"[{correlation_id[:8]} {operation}] "
        elif operation:
            prefix = f"[{operation}] "

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        msg = f"{timestamp} {record.levelname:8} {prefix}{record.name}: {record.getMessage()}"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that turns keyword arguments into structured fields.

    Usage:
        logger = get_logger(__name__)
        logger.info("Status updated", product_id=7, new_status="in_transit")
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = kwargs.get("extra", {})

        for key in list(kwargs.keys()):
            if key not in ("exc_info", "stack_info", "stacklevel", "extra"):
                extra[key] = kwargs.pop(key)

        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """
    Get a structured logger for the given name.

    Args:
        name: Logger name (typically __name__)
    """
    return ContextLogger(logging.getLogger(name), {})


def setup_logging() -> None:
    """
    Configure logging for the process.

    Call this once at startup (the CLI does).
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(_get_log_level())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(_get_log_level())

    if _use_json_logging():
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(TextFormatter())

    root_logger.addHandler(handler)


@contextmanager
def operation_context(
    operation: str,
    actor: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> Generator[str, None, None]:
    """
    Tag every log line emitted inside the block with the operation name,
    the calling identity and a correlation id (generated when not given).

    Yields the correlation id in effect.
    """
    cid = correlation_id or str(uuid.uuid4())[:8]
    op_token = operation_var.set(operation)
    actor_token = actor_var.set(actor or "")
    cid_token = correlation_id_var.set(cid)
    try:
        yield cid
    finally:
        operation_var.reset(op_token)
        actor_var.reset(actor_token)
        correlation_id_var.reset(cid_token)


# ============================================================
# METRICS
# ============================================================

@dataclass
class MetricsCollector:
    """
    Simple in-memory metrics collector.

    For production, replace with Prometheus, StatsD, or similar.
    """

    # Counters
    facts_appended: int = 0
    mutations_rejected: int = 0
    rejections_by_kind: Dict[str, int] = field(default_factory=dict)

    # Histograms (simplified as lists)
    append_latencies_ms: list = field(default_factory=list)

    def record_append(self, latency_ms: float) -> None:
        """Record a committed fact."""
        self.facts_appended += 1
        self.append_latencies_ms.append(latency_ms)
        # Keep only last 1000 samples
        if len(self.append_latencies_ms) > 1000:
            self.append_latencies_ms = self.append_latencies_ms[-1000:]

    def record_rejection(self, kind: str) -> None:
        """Record a mutation rejected with a ledger error."""
        self.mutations_rejected += 1
        self.rejections_by_kind[kind] = self.rejections_by_kind.get(kind, 0) + 1

    def get_summary(self) -> Dict[str, Any]:
        def percentile(data: list, p: float) -> Optional[float]:
            if not data:
                return None
            sorted_data = sorted(data)
            idx = int(len(sorted_data) * p)
            return sorted_data[min(idx, len(sorted_data) - 1)]

        return {
            "facts_appended": self.facts_appended,
            "mutations_rejected": self.mutations_rejected,
            "rejections_by_kind": dict(self.rejections_by_kind),
            "append_latency_p50_ms": percentile(self.append_latencies_ms, 0.5),
            "append_latency_p95_ms": percentile(self.append_latencies_ms, 0.95),
            "append_latency_p99_ms": percentile(self.append_latencies_ms, 0.99),
        }


_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return _metrics


def reset_metrics() -> MetricsCollector:
    """Replace the global collector with a fresh one (tests, CLI runs)."""
    global _metrics
    _metrics = MetricsCollector()
    return _metrics


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    """Health check result."""
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def check_health(ledger=None, fact_log=None) -> HealthStatus:
    """
    Run all health checks.

    Args:
        ledger: ProductLedger instance (enables the chain integrity check)
        fact_log: FactLog instance
    """
    start = time.perf_counter()
    checks = {}
    all_healthy = True

    checks["liveness"] = {"status": "healthy"}

    if fact_log is not None:
        try:
            head = fact_log.get_head()
            checks["fact_log"] = {
                "status": "healthy",
                "fact_count": head.next_sequence,
                "last_hash": head.last_fact_hash[:16] + "..." if head.last_fact_hash else None,
            }
        except Exception as e:
            checks["fact_log"] = {
                "status": "unhealthy",
                "error": str(e),
            }
            all_healthy = False

    # Expensive: replays every hash in the log.
    if ledger is not None:
        try:
            is_valid = ledger.verify_chain_integrity()
            checks["chain_integrity"] = {
                "status": "healthy" if is_valid else "unhealthy",
                "valid": is_valid,
                "paused": ledger.is_paused(),
                "product_count": ledger.total_count(),
            }
            if not is_valid:
                all_healthy = False
        except Exception as e:
            checks["chain_integrity"] = {
                "status": "unhealthy",
                "error": str(e),
            }
            all_healthy = False

    duration_ms = (time.perf_counter() - start) * 1000

    return HealthStatus(
        healthy=all_healthy,
        checks=checks,
        duration_ms=round(duration_ms, 2),
    )
