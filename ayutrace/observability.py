"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured logging with per-request ids (JSON or text)
- Request middleware that tags responses with X-Request-ID
- In-process metrics for appends, verifications and requests
- Health checks: store reachability and sampled chain verification

Configuration:
- AYUTRACE_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- AYUTRACE_LOG_FORMAT: json, text (default: json in production)
- AYUTRACE_PRODUCTION: Enable production mode

Usage:
    from ayutrace.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Ledger entry appended", lot_id=lot_id, sequence=3)
"""

import json
import logging
import os
import sys
import threading
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

if TYPE_CHECKING:
    from .core.ledger import LedgerService

request_id_var: ContextVar[str] = ContextVar("request_id", default="")


# ============================================================
# LOG SETTINGS
# ============================================================

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


@dataclass
class LogSettings:
    level: int = logging.INFO
    json_output: bool = False

    @classmethod
    def from_env(cls) -> "LogSettings":
        production = os.environ.get("AYUTRACE_PRODUCTION", "").lower() in ("1", "true", "yes")
        fmt = os.environ.get("AYUTRACE_LOG_FORMAT", "").lower()
        return cls(
            level=_LEVELS.get(os.environ.get("AYUTRACE_LOG_LEVEL", "INFO").upper(), logging.INFO),
            json_output=fmt == "json" or (fmt != "text" and production),
        )


# ============================================================
# FORMATTERS
# ============================================================

# Attributes every LogRecord has; anything else came in through `extra`
_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


def _context_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value for key, value in record.__dict__.items()
        if key not in _STANDARD_ATTRS and not key.startswith("_")
    }


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line:

        {"timestamp": "...", "level": "INFO", "logger": "ayutrace.core.ledger",
         "message": "Ledger entry appended", "request_id": "1f2e3d4c",
         "lot_id": "...", "sequence": 3}
    """

    def format(self, record: logging.LogRecord) -> str:
        doc: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if request_id_var.get():
            doc["request_id"] = request_id_var.get()
        doc.update({k: _jsonable(v) for k, v in _context_fields(record).items()})
        if record.exc_info:
            doc["exception"] = self.formatException(record.exc_info)
        return json.dumps(doc)


class TextFormatter(logging.Formatter):
    """Single-line output for a terminal, context fields appended as key=value."""

    def format(self, record: logging.LogRecord) -> str:
        when = datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        request_id = request_id_var.get()
        tag = f"[{request_id}] " if request_id else ""

        parts = [f"{when} {record.levelname:8} {tag}{record.name}: {record.getMessage()}"]
        parts.extend(f"{k}={v}" for k, v in _context_fields(record).items())
        line = " ".join(parts)

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ContextLogger(logging.LoggerAdapter):
    """
    Accepts context as keyword arguments:

        logger.info("Pack minted", pack_id=pack_id, lot_id=lot_id)
    """

    _PASSTHROUGH = ("exc_info", "stack_info", "stacklevel", "extra")

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(kwargs.pop("extra", None) or {})
        for key in [k for k in kwargs if k not in self._PASSTHROUGH]:
            extra[key] = kwargs.pop(key)
        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(logging.getLogger(name), {})


def setup_logging(settings: Optional[LogSettings] = None) -> None:
    """Install a single stdout handler on the root logger. Call once at startup."""
    settings = settings or LogSettings.from_env()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(settings.level)
    handler.setFormatter(StructuredFormatter() if settings.json_output else TextFormatter())

    root = logging.getLogger()
    root.setLevel(settings.level)
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)

    for noisy in ("uvicorn.access", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Binds a request id for the duration of a request and logs the outcome.

    The id comes from the X-Request-ID header when the caller sends one
    and is echoed back on the response. Latency and success are fed into
    app.state.metrics when it is set.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        token = request_id_var.set(request_id)
        metrics: Optional[MetricsCollector] = getattr(request.app.state, "metrics", None)
        logger = get_logger("ayutrace.request")
        route = f"{request.method} {request.url.path}"
        started = time.perf_counter()

        logger.debug(
            route,
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
        )

        try:
            try:
                response = await call_next(request)
            except Exception as e:
                elapsed = (time.perf_counter() - started) * 1000
                logger.exception(f"{route} -> 500", status_code=500, duration_ms=round(elapsed, 2), error=str(e))
                if metrics is not None:
                    metrics.record_request(elapsed, success=False)
                raise

            elapsed = (time.perf_counter() - started) * 1000
            logger.log(
                logging.INFO if response.status_code < 400 else logging.WARNING,
                f"{route} -> {response.status_code}",
                status_code=response.status_code,
                duration_ms=round(elapsed, 2),
            )
            if metrics is not None:
                metrics.record_request(elapsed, success=response.status_code < 500)

            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            request_id_var.reset(token)


# ============================================================
# METRICS
# ============================================================

class LatencySeries:
    """Bounded window of latency samples in milliseconds."""

    def __init__(self, max_samples: int = 1000):
        self._samples: List[float] = []
        self._max = max_samples

    def add(self, value_ms: float) -> None:
        self._samples.append(value_ms)
        if len(self._samples) > self._max:
            del self._samples[: len(self._samples) - self._max]

    def percentile(self, p: float) -> Optional[float]:
        if not self._samples:
            return None
        ordered = sorted(self._samples)
        return round(ordered[min(int(len(ordered) * p), len(ordered) - 1)], 2)

    def __len__(self) -> int:
        return len(self._samples)


@dataclass
class MetricsCollector:
    """
    Process-local counters. Safe to share between request threads.

    Resets on restart; export to a real metrics backend if that matters.
    """
    entries_appended: int = 0
    verifications: int = 0
    verifications_failed: int = 0
    requests_total: int = 0
    requests_failed: int = 0

    append_latency: LatencySeries = field(default_factory=LatencySeries)
    request_latency: LatencySeries = field(default_factory=LatencySeries)

    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record_append(self, latency_ms: float) -> None:
        with self._lock:
            self.entries_appended += 1
            self.append_latency.add(latency_ms)

    def record_verification(self, valid: bool) -> None:
        with self._lock:
            self.verifications += 1
            self.verifications_failed += 0 if valid else 1

    def record_request(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self.requests_total += 1
            self.requests_failed += 0 if success else 1
            self.request_latency.add(latency_ms)

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "entries_appended": self.entries_appended,
                "verifications": self.verifications,
                "verifications_failed": self.verifications_failed,
                "requests_total": self.requests_total,
                "requests_failed": self.requests_failed,
                "append_latency_p50_ms": self.append_latency.percentile(0.5),
                "append_latency_p95_ms": self.append_latency.percentile(0.95),
                "append_latency_p99_ms": self.append_latency.percentile(0.99),
                "request_latency_p50_ms": self.request_latency.percentile(0.5),
                "request_latency_p95_ms": self.request_latency.percentile(0.95),
            }


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def _check_store(ledger: "LedgerService") -> tuple[Dict[str, Any], List[str]]:
    try:
        entry_count = ledger.get_entry_count()
        lot_ids = ledger.store.list_lot_ids()
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}, []
    return {
        "status": "healthy",
        "store_type": type(ledger.store).__name__,
        "entry_count": entry_count,
        "lots": len(lot_ids),
    }, lot_ids


def _check_chains(ledger: "LedgerService", lot_ids: List[str], sample: int) -> Dict[str, Any]:
    checked = lot_ids[:sample]
    try:
        results = [ledger.verify(lot_id) for lot_id in checked]
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}

    broken = [
        {"lot_id": r.lot_id, "message": r.message}
        for r in results if not r.valid
    ]
    return {
        "status": "unhealthy" if broken else "healthy",
        "lots_checked": len(checked),
        "lots_total": len(lot_ids),
        "broken": broken,
    }


def check_health(ledger: Optional["LedgerService"] = None, sample_lots: int = 5) -> HealthStatus:
    """
    Run the health checks.

    Args:
        ledger: Service whose store is checked. None checks liveness only.
        sample_lots: How many lots to re-verify (0 skips chain checks)
    """
    started = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}

    if ledger is not None:
        checks["ledger_store"], lot_ids = _check_store(ledger)
        if lot_ids and sample_lots > 0:
            checks["chain_integrity"] = _check_chains(ledger, lot_ids, sample_lots)

    return HealthStatus(
        healthy=all(check["status"] == "healthy" for check in checks.values()),
        checks=checks,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
