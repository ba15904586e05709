"""Common value objects shared by every partner gateway.

Everything here is immutable once built: a gateway holds its PartnerConfig
for its whole lifetime and the auditor only ever receives finished
AuditRecords.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

DEFAULT_RETRYABLE_SIGNALS = frozenset({
    "ETIMEDOUT",
    "ECONNRESET",
    "ECONNREFUSED",
    "429",  # rate limit
    "500",  # server error
    "502",  # bad gateway
    "503",  # service unavailable
    "504",  # gateway timeout
})


@dataclass(frozen=True)
class PartnerConfig:
    """Already-resolved configuration for one partner.

    Durations are in seconds. ``retry_delay`` is the delay before the second
    attempt; ``retry_delay_base`` is the exponential multiplier.
    """

    enabled: bool = False
    api_key: str | None = None
    api_secret: str | None = None
    base_url: str | None = None
    timeout: float = 30.0
    retry_attempts: int = 3
    retry_delay: float = 1.0
    retry_delay_base: float = 2.0

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key or self.api_secret)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff policy. No jitter."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    retryable_signals: frozenset = DEFAULT_RETRYABLE_SIGNALS

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        # Accept any iterable of codes / statuses, normalised to strings.
        object.__setattr__(
            self, "retryable_signals", frozenset(str(s) for s in self.retryable_signals)
        )

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        return min(self.initial_delay * self.backoff_multiplier ** (attempt - 1), self.max_delay)


@dataclass(frozen=True)
class AuditRecord:
    """One outbound call, as seen by the auditor. Payloads are pre-sanitized."""

    partner_name: str
    endpoint: str
    method: str
    sanitized_request: Any
    duration_ms: int
    sanitized_response: Any = None
    error: str | None = None
    user_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def success(self) -> bool:
        return self.error is None

    def to_log_dict(self) -> dict:
        """Fields suitable for a structured log line. Never includes payloads."""
        return {
            "partner": self.partner_name,
            "endpoint": self.endpoint,
            "method": self.method,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp.isoformat(),
            "success": self.success,
            "error": self.error,
            "user_id": self.user_id,
        }


@dataclass
class HealthCheckResult:
    healthy: bool
    message: str | None = None
    last_checked: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    response_time_ms: int | None = None

    def to_dict(self) -> dict:
        return {
            "healthy": self.healthy,
            "message": self.message,
            "lastChecked": self.last_checked.isoformat(),
            "responseTime": self.response_time_ms,
        }


@dataclass(frozen=True)
class WinFlexSSOSettings:
    """Agency-level LifeLink credentials for the WinFlex Web SSO handoff.

    Separate from the WinFlex API key: SSO authenticates the agency with a
    company code and password posted to ``sso_url``.
    """

    company_code: str | None = None
    company_password: str | None = None
    sso_url: str = "https://www.winflexweb.com/wfw_sso_login.aspx"

    @property
    def is_configured(self) -> bool:
        return bool(self.company_code and self.company_password)

    def masked_company_code(self) -> str | None:
        """First two characters only, e.g. ``"AB**"``."""
        if not self.company_code:
            return None
        return f"{self.company_code[:2]}**"
