"""Redacting audit trail for outbound partner calls.

Every gateway call produces one AuditRecord. Recording is fire-and-forget:
``IntegrationAuditor.record()`` only enqueues onto a bounded buffer and a
daemon worker thread hands records to the configured sink. Audit problems
(full buffer, sink exceptions, bad records) are logged here and never reach
the caller whose request is being audited.

Payloads must pass through ``sanitize()`` before they are put in a record.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Any, Callable, Protocol

from agency_gateway.integrations.types import AuditRecord

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

# Matched as substrings of the lower-cased key.
SENSITIVE_FIELDS = (
    "password",
    "apikey",
    "api_key",
    "apisecret",
    "api_secret",
    "token",
    "accesstoken",
    "access_token",
    "refreshtoken",
    "refresh_token",
    "ssn",
    "socialsecuritynumber",
    "creditcard",
    "credit_card",
    "cvv",
    "pin",
)

_DEFAULT_BUFFER_SIZE = 1000


def _is_sensitive(key: Any) -> bool:
    lowered = str(key).lower()
    return any(term in lowered for term in SENSITIVE_FIELDS)


def sanitize(value: Any) -> Any:
    """Return a deep copy of ``value`` with sensitive keys masked.

    Dicts are walked key by key; lists and tuples element by element.
    Primitive values are returned unchanged. The input is never mutated.
    """
    if isinstance(value, dict):
        return {
            k: REDACTED if _is_sensitive(k) else sanitize(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [sanitize(v) for v in value]
    if isinstance(value, tuple):
        return tuple(sanitize(v) for v in value)
    return value


def start_timer() -> Callable[[], int]:
    """Start a monotonic timer; the returned function gives elapsed ms."""
    start = time.monotonic()

    def stop() -> int:
        return int((time.monotonic() - start) * 1000)

    return stop


class AuditSink(Protocol):
    """Where finished audit records go (log stream, durable store, ...)."""

    def write(self, record: AuditRecord) -> None: ...


class LoggingAuditSink:
    """Default sink: one structured INFO line per call on the audit logger."""

    def __init__(self, logger_name: str = "agency_gateway.audit") -> None:
        self._logger = logging.getLogger(logger_name)

    def write(self, record: AuditRecord) -> None:
        fields = record.to_log_dict()
        self._logger.info(
            "[INTEGRATION_AUDIT] partner=%s %s %s duration=%dms success=%s%s",
            record.partner_name, record.method, record.endpoint,
            record.duration_ms, record.success,
            f" error={record.error}" if record.error else "",
            extra={
                "event_type": "integration_audit",
                "partner": fields["partner"],
                "endpoint": fields["endpoint"],
                "method": fields["method"],
                "duration_ms": fields["duration_ms"],
            },
        )


class IntegrationAuditor:
    """Asynchronous, never-raising audit recorder.

    Usage:
        auditor = IntegrationAuditor(LoggingAuditSink())
        auditor.record(AuditRecord(...))      # returns immediately
        auditor.flush()                       # tests / graceful shutdown

    Args:
        sink:        Destination of records; defaults to LoggingAuditSink.
        buffer_size: Max records waiting for the worker. When full, new
                     records are dropped with a warning rather than blocking.
    """

    def __init__(self, sink: AuditSink | None = None, buffer_size: int = _DEFAULT_BUFFER_SIZE) -> None:
        self._sink = sink or LoggingAuditSink()
        self._queue: queue.Queue = queue.Queue(maxsize=buffer_size)
        self._worker: threading.Thread | None = None
        self._lock = threading.Lock()
        self._closed = False

    def _ensure_worker(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        with self._lock:
            if self._worker is None or not self._worker.is_alive():
                self._worker = threading.Thread(
                    target=self._drain, name="integration-audit", daemon=True
                )
                self._worker.start()

    def _drain(self) -> None:
        while True:
            record = self._queue.get()
            try:
                if record is None:
                    return
                self._sink.write(record)
            except Exception:
                logger.exception("Failed to write integration audit record")
            finally:
                self._queue.task_done()

    def record(self, entry: AuditRecord) -> None:
        """Enqueue a record for the sink. Never raises."""
        try:
            if self._closed:
                logger.warning("Audit record dropped: auditor closed partner=%s",
                               getattr(entry, "partner_name", None))
                return
            self._ensure_worker()
            self._queue.put_nowait(entry)
        except queue.Full:
            logger.warning(
                "Audit buffer full, record dropped partner=%s endpoint=%s",
                getattr(entry, "partner_name", None), getattr(entry, "endpoint", None),
            )
        except Exception:
            logger.exception("Failed to enqueue integration audit record")

    def flush(self, timeout: float = 5.0) -> bool:
        """Block until queued records are written or ``timeout`` elapses.

        Returns True if the buffer drained in time.
        """
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def close(self, timeout: float = 5.0) -> None:
        """Drain outstanding records and stop the worker thread."""
        if self._closed:
            return
        self.flush(timeout)
        self._closed = True
        if self._worker is not None and self._worker.is_alive():
            try:
                self._queue.put_nowait(None)
            except queue.Full:
                logger.warning("Audit worker stop signal dropped: buffer full")
                return
            self._worker.join(timeout)
