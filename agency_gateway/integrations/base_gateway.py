"""Shared request pipeline for every partner gateway.

Each outbound call goes through ``PartnerGateway.request()``:
  1. Readiness check — disabled / credential-less partners never hit the network.
  2. Auth header injection (``auth_headers()``, overridden per partner).
  3. Bounded retry with exponential backoff (integrations.retry).
  4. Per-attempt timeout enforced by requests; non-2xx → PartnerHTTPError.
  5. One sanitized audit record per call, success or failure.
  6. Terminal failures normalised into a single IntegrationError.

Testability: pass a mock ``session`` (anything with ``.request()``), an
auditor and a recording ``sleep`` to the constructor instead of letting the
gateway build a real requests.Session.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

import requests

from agency_gateway.core.exceptions import (
    IntegrationError,
    PartnerHTTPError,
    RetryExhaustedError,
    TransportError,
)
from agency_gateway.integrations.audit import IntegrationAuditor, sanitize, start_timer
from agency_gateway.integrations.retry import is_retryable, run_with_retry
from agency_gateway.integrations.types import (
    DEFAULT_RETRYABLE_SIGNALS,
    AuditRecord,
    HealthCheckResult,
    PartnerConfig,
    RetryPolicy,
)

logger = logging.getLogger(__name__)

_ERROR_BODY_LIMIT = 500


class PartnerGateway:
    """Base gateway wrapping one partner HTTP API.

    Subclasses set ``name`` / ``default_base_url`` and add partner operations
    on top of ``request()``. The instance holds only its immutable config and
    injected collaborators, so one gateway can serve concurrent callers.
    """

    name = "Partner"
    default_base_url = ""
    health_endpoint = "/health"

    def __init__(
        self,
        config: PartnerConfig,
        *,
        session: Any | None = None,
        auditor: IntegrationAuditor | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.session = session if session is not None else requests.Session()
        self.auditor = auditor or IntegrationAuditor()
        self._sleep = sleep

    # ── Configuration ────────────────────────────────────────────────────────

    @property
    def base_url(self) -> str:
        return (self.config.base_url or self.default_base_url).rstrip("/")

    def is_enabled(self) -> bool:
        return self.config.enabled

    def is_ready(self) -> bool:
        """Enabled and holding credentials — the only state that may call out."""
        return self.config.enabled and self.config.has_credentials

    def auth_headers(self) -> dict[str, str]:
        """Default auth: bearer API key. Partners override for their scheme."""
        if self.config.api_key:
            return {"Authorization": f"Bearer {self.config.api_key}"}
        return {}

    def default_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=max(1, self.config.retry_attempts),
            initial_delay=self.config.retry_delay,
            backoff_multiplier=self.config.retry_delay_base,
        )

    # ── Core request dispatcher ──────────────────────────────────────────────

    def _send_once(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        json_body: Any,
        params: dict | None,
        form_body: dict | None = None,
    ) -> requests.Response:
        """Execute a single HTTP attempt, translating failures for retry."""
        kwargs: dict[str, Any] = {"headers": headers, "timeout": self.config.timeout}
        if json_body is not None:
            kwargs["json"] = json_body
        if form_body is not None:
            kwargs["data"] = form_body
        if params:
            kwargs["params"] = params

        try:
            resp = self.session.request(method, url, **kwargs)
        except requests.Timeout as exc:
            raise TransportError(
                "ETIMEDOUT", f"Request timed out after {self.config.timeout}s"
            ) from exc
        except requests.ConnectionError as exc:
            text = str(exc)
            code = "ECONNREFUSED" if "refused" in text.lower() else "ECONNRESET"
            raise TransportError(code, text[:_ERROR_BODY_LIMIT]) from exc

        if not 200 <= resp.status_code < 300:
            try:
                body = resp.text
            except Exception:
                body = "Unknown error"
            raise PartnerHTTPError(
                resp.status_code, f"HTTP {resp.status_code}: {(body or '')[:_ERROR_BODY_LIMIT]}"
            )
        return resp

    def _parse_json(self, resp: requests.Response) -> Any:
        try:
            return resp.json() if resp.content else {}
        except ValueError as exc:
            raise IntegrationError(
                "INVALID_RESPONSE",
                f"{self.name} returned a non-JSON body",
                details={"partner": self.name, "error": exc},
            ) from exc

    def request(
        self,
        endpoint: str,
        *,
        method: str = "GET",
        json_body: Any = None,
        params: dict | None = None,
        headers: dict[str, str] | None = None,
        retry_policy: RetryPolicy | None = None,
        user_id: str | None = None,
    ) -> Any:
        """Call ``endpoint`` on the partner and return the parsed JSON body.

        Args:
            endpoint:     Path relative to the partner base URL.
            method:       HTTP verb.
            json_body:    JSON-serialisable request body.
            params:       Query parameters.
            headers:      Extra caller headers (merged after auth headers).
            retry_policy: Overrides the policy derived from PartnerConfig.
            user_id:      Acting user, copied into the audit record.

        Raises:
            IntegrationError: on any terminal failure (after retries).
        """
        if not self.is_ready():
            raise IntegrationError(
                "PARTNER_NOT_CONFIGURED",
                f"{self.name} integration is disabled or has no credentials",
                retryable=False,
                details={"partner": self.name},
            )
        return self._dispatch(
            f"{self.base_url}{endpoint}",
            endpoint,
            method=method,
            headers={"Content-Type": "application/json", **self.auth_headers(), **(headers or {})},
            json_body=json_body,
            params=params,
            retry_policy=retry_policy,
            user_id=user_id,
            audit_headers=headers,
        )

    def _dispatch(
        self,
        url: str,
        endpoint: str,
        *,
        method: str,
        headers: dict[str, str],
        json_body: Any = None,
        form_body: dict | None = None,
        params: dict | None = None,
        retry_policy: RetryPolicy | None = None,
        user_id: str | None = None,
        audit_headers: dict | None = None,
        audit_body: Any = None,
        parse: Callable[[requests.Response], Any] | None = None,
        audit_response: bool = True,
    ) -> Any:
        """Retry, parse and audit one call to an absolute ``url``.

        ``audit_body`` replaces the request body in the audit summary when the
        wire body cannot be sanitised key by key (form-encoded XML). ``parse``
        turns the final response into the return value; an IntegrationError
        it raises is audited as a failure like any transport error.
        """
        method = method.upper()
        parse = parse or self._parse_json
        timer = start_timer()
        request_summary = sanitize({
            "url": url,
            "method": method,
            "headers": audit_headers,
            "params": params,
            "body": audit_body if audit_body is not None else json_body,
        })

        try:
            resp = run_with_retry(
                lambda: self._send_once(method, url, headers, json_body, params, form_body),
                retry_policy or self.default_retry_policy(),
                sleep=self._sleep,
                label=f"{self.name} {method} {endpoint}",
            )
            data = parse(resp)
        except Exception as exc:
            duration = timer()
            integration_error = self.classify_error(exc)
            self.auditor.record(AuditRecord(
                partner_name=self.name,
                endpoint=endpoint,
                method=method,
                sanitized_request=request_summary,
                error=integration_error.message,
                duration_ms=duration,
                user_id=user_id,
            ))
            logger.warning(
                "%s request failed %s %s code=%s retryable=%s",
                self.name, method, endpoint, integration_error.code, integration_error.retryable,
                extra={"partner": self.name, "endpoint": endpoint, "error_code": integration_error.code},
            )
            if integration_error is exc:
                raise
            raise integration_error from exc

        self.auditor.record(AuditRecord(
            partner_name=self.name,
            endpoint=endpoint,
            method=method,
            sanitized_request=request_summary,
            sanitized_response=sanitize(data) if audit_response else None,
            duration_ms=timer(),
            user_id=user_id,
        ))
        return data

    # ── Error normalisation ──────────────────────────────────────────────────

    def classify_error(self, error: BaseException) -> IntegrationError:
        """Turn any terminal failure into an IntegrationError.

        RetryExhaustedError is unwrapped so the code and retryable flag
        describe the last underlying failure.
        """
        if isinstance(error, IntegrationError):
            return error

        terminal = error.last_error if isinstance(error, RetryExhaustedError) else error
        status = getattr(terminal, "status", None) or getattr(terminal, "status_code", None)
        code = getattr(terminal, "code", None)

        if status:
            code = f"HTTP_{status}"
        elif not isinstance(code, str) or not code:
            code = "UNKNOWN_ERROR"

        return IntegrationError(
            code,
            str(terminal),
            retryable=is_retryable(terminal, DEFAULT_RETRYABLE_SIGNALS),
            details={"partner": self.name, "error": terminal},
        )

    # ── Health ───────────────────────────────────────────────────────────────

    def health_check(self) -> HealthCheckResult:
        """Probe the partner once. Never raises.

        Disabled or credential-less partners report unhealthy without any
        network call.
        """
        if not self.config.enabled:
            return HealthCheckResult(healthy=False, message=f"{self.name} integration is disabled")
        if not self.config.has_credentials:
            return HealthCheckResult(healthy=False, message=f"{self.name} API credentials not configured")

        timer = start_timer()
        try:
            self.request(self.health_endpoint, retry_policy=RetryPolicy(max_attempts=1))
        except Exception as exc:
            return HealthCheckResult(healthy=False, message=str(exc), response_time_ms=timer())
        return HealthCheckResult(healthy=True, message=f"{self.name} API is operational", response_time_ms=timer())

    def status(self) -> dict:
        health = self.health_check()
        return {
            "name": self.name,
            "enabled": self.config.enabled,
            "healthy": health.healthy,
            "healthCheck": health.to_dict(),
        }
