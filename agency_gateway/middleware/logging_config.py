"""
Structured logging configuration.

- Development / testing: human-readable colored lines
- Production: one JSON object per line (log aggregator compatible)
- LOG_LEVEL overrides the level, LOG_FORMAT ("json" | "readable") the format
- AUDIT_LOG_LEVEL sets the level of the ``agency_gateway.audit`` logger,
  so partner-call audit lines can be silenced or kept independently

Gateway code passes partner-call context through ``extra=`` (partner,
endpoint, attempt, error_code, ...). The JSON formatter lifts those keys onto
the top level of each entry; the readable formatter shows them inline.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

AUDIT_LOGGER = "agency_gateway.audit"

# LogRecord attributes promoted into the JSON entry when set.
CONTEXT_FIELDS = (
    "event_type",
    "partner",
    "method",
    "endpoint",
    "attempt",
    "error_code",
    "duration_ms",
    "request_id",
)


def _context(record: logging.LogRecord) -> dict:
    return {
        key: getattr(record, key)
        for key in CONTEXT_FIELDS
        if getattr(record, key, None) is not None
    }


class JSONFormatter(logging.Formatter):
    """Single-line JSON entries for production log shipping."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update(_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored one-liners for a developer terminal.

    ``12:00:01 WARNING  agency_gateway.integrations.retry [WinFlex #2 HTTP_503]: ...``
    """

    COLORS = {
        "DEBUG": "\033[36m",      # cyan
        "INFO": "\033[32m",       # green
        "WARNING": "\033[33m",    # yellow
        "ERROR": "\033[31m",      # red
        "CRITICAL": "\033[35m",   # magenta
    }
    RESET = "\033[0m"

    @staticmethod
    def _tag(record: logging.LogRecord) -> str:
        parts = []
        if getattr(record, "partner", None):
            parts.append(str(record.partner))
        if getattr(record, "attempt", None):
            parts.append(f"#{record.attempt}")
        if getattr(record, "error_code", None):
            parts.append(str(record.error_code))
        return f" [{' '.join(parts)}]" if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = (
            f"{color}{ts} {record.levelname:<8}{self.RESET} "
            f"{record.name}{self._tag(record)}: {record.getMessage()}"
        )
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _level(name: str | None, default: int) -> int:
    if not name:
        return default
    return getattr(logging, name.upper(), default)


def configure_logging(app):
    """
    Install the root handler for the Flask app.

    Production (not DEBUG, not TESTING) → JSONFormatter at INFO
    Everything else                     → ReadableFormatter at DEBUG
    Output goes to stderr in both cases.
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level = _level(os.getenv("LOG_LEVEL"), logging.INFO if is_prod else logging.DEBUG)
    fmt = (os.getenv("LOG_FORMAT") or ("json" if is_prod else "readable")).lower()
    formatter = JSONFormatter() if fmt == "json" else ReadableFormatter()

    root = logging.getLogger()
    # Re-created apps (tests) must not stack handlers
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root.addHandler(handler)
    root.setLevel(level)

    logging.getLogger(AUDIT_LOGGER).setLevel(_level(os.getenv("AUDIT_LOG_LEVEL"), logging.INFO))
    for noisy in ("urllib3", "werkzeug"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info(
            "Logging configured: level=%s format=%s", logging.getLevelName(level), fmt
        )
