"""
Gateway-wide exception hierarchy.

Why this module exists:
  Every partner gateway, the quote aggregator and the SAML assertion service
  raise from one taxonomy so blueprints register handlers once and callers
  never have to import exception classes from a partner-specific module.

Taxonomy:
  TransportError        timeout / connection reset / refused   (retryable)
  PartnerHTTPError      non-2xx partner response               (429 + 5xx retryable)
  RetryExhaustedError   every attempt hit a retryable failure
  IntegrationError      terminal, normalised error surfaced by a gateway
  ConfigurationError    signing material or SSO credentials absent (fatal)
  ValidationError       malformed caller input

Usage:
    from agency_gateway.core.exceptions import IntegrationError, ValidationError

    raise ValidationError("clientInfo.dateOfBirth is required")
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


class GatewayError(Exception):
    """Base class for every error raised by this package."""


class TransportError(GatewayError):
    """Network-level failure before a partner produced an HTTP response.

    Args:
        code: Transport error code (ETIMEDOUT, ECONNRESET, ECONNREFUSED).
        message: Human-readable description, never contains payload data.
    """

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        super().__init__(message)


class PartnerHTTPError(GatewayError):
    """Raised for any non-2xx partner response.

    Both ``status`` and ``status_code`` are set so retry classification works
    the same way for this error and for third-party exceptions that carry
    either attribute.
    """

    def __init__(self, status: int, message: str) -> None:
        self.status = status
        self.status_code = status
        super().__init__(message)


class RetryExhaustedError(GatewayError):
    """Raised only when max_attempts were spent on retryable failures.

    Args:
        attempts: Number of attempts made (== policy.max_attempts).
        last_error: The error raised by the final attempt.
    """

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Failed after {attempts} attempts: {last_error}")


class IntegrationError(GatewayError):
    """Standardised terminal error surfaced by a partner gateway.

    Produced exactly once per failed request (after retries are over).

    Args:
        code: Machine-readable code, e.g. ``HTTP_503`` or ``ETIMEDOUT``.
        message: Message of the terminal error.
        retryable: Whether the terminal error belongs to the retryable set.
        details: Opaque extra context (the original exception, partner name).
    """

    def __init__(
        self,
        code: str,
        message: str,
        *,
        retryable: bool = False,
        details: Any = None,
        timestamp: datetime | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.retryable = retryable
        self.details = details
        self.timestamp = timestamp or datetime.now(timezone.utc)
        super().__init__(message)

    def to_dict(self) -> dict:
        """Serialisable form. ``details`` is reduced to its string form."""
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": str(self.details) if self.details is not None else None,
            "timestamp": self.timestamp.isoformat(),
        }


class ConfigurationError(GatewayError):
    """Raised when signing material or WinFlex SSO credentials are missing or unusable.

    Security note: the SAML assertion service raises this instead of ever
    emitting an unsigned assertion.
    """


class ValidationError(GatewayError):
    """Raised when caller input is malformed.

    Maps to HTTP 400 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)
