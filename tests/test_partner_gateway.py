"""Tests for the shared partner request pipeline (integrations.base_gateway).

Coverage:
  1. URL joining, header merge order and per-attempt timeout
  2. Successful call returns parsed JSON and writes one sanitized audit record
  3. Retryable failures back off and surface as a retryable IntegrationError
  4. Non-retryable failures surface after a single attempt
  5. Transport failures (timeout / connection refused) are classified
  6. Partners that are not ready never touch the network
  7. health_check(): disabled / no credentials / healthy / failing check
  8. status() shape and default retry policy derivation
"""

from __future__ import annotations

from dataclasses import replace

import pytest
import requests

from agency_gateway.core.exceptions import IntegrationError, RetryExhaustedError
from agency_gateway.integrations.audit import REDACTED
from agency_gateway.integrations.base_gateway import PartnerGateway
from agency_gateway.integrations.types import PartnerConfig


class EchoGateway(PartnerGateway):
    name = "Echo"
    default_base_url = "https://echo.example.com"


def _make_gateway(config, session, auditor, sleep) -> EchoGateway:
    return EchoGateway(config, session=session, auditor=auditor, sleep=sleep)


def _audited(auditor, sink):
    assert auditor.flush(timeout=2.0)
    return sink.records


class TestRequestSuccess:
    def test_sends_joined_url_headers_and_timeout(
        self, live_config, mock_session, auditor, recording_sleep, make_response
    ):
        mock_session.request.return_value = make_response(200, {"ok": True})
        gw = _make_gateway(live_config, mock_session, auditor, recording_sleep)

        gw.request("/quotes/life", method="post", json_body={"age": 40}, headers={"X-Trace": "t-1"})

        mock_session.request.assert_called_once_with(
            "POST",
            "https://partner.example.com/v1/quotes/life",
            headers={
                "Content-Type": "application/json",
                "Authorization": "Bearer key-123",
                "X-Trace": "t-1",
            },
            timeout=5.0,
            json={"age": 40},
        )

    def test_returns_parsed_json_and_audits_once(
        self, live_config, mock_session, auditor, audit_sink, recording_sleep, make_response
    ):
        """
        Given a 200 response containing a token
        When request() is called with an SSN in the body
        Then the parsed body is returned and exactly one audit record is written
        with both payloads redacted and no auth header
        """
        mock_session.request.return_value = make_response(200, {"quotes": [1], "token": "t0k"})
        gw = _make_gateway(live_config, mock_session, auditor, recording_sleep)

        data = gw.request(
            "/applications", method="POST",
            json_body={"applicant": {"ssn": "123-45-6789", "name": "Pat"}},
            user_id="agent-9",
        )

        assert data == {"quotes": [1], "token": "t0k"}
        (record,) = _audited(auditor, audit_sink)
        assert record.partner_name == "Echo"
        assert record.endpoint == "/applications"
        assert record.method == "POST"
        assert record.success is True
        assert record.user_id == "agent-9"
        assert record.sanitized_request["body"] == {"applicant": {"ssn": REDACTED, "name": "Pat"}}
        assert "Authorization" not in str(record.sanitized_request)
        assert record.sanitized_response == {"quotes": [1], "token": REDACTED}
        assert record.duration_ms >= 0

    def test_empty_body_parses_to_empty_dict(
        self, live_config, mock_session, auditor, recording_sleep, make_response
    ):
        mock_session.request.return_value = make_response(204, text="")
        gw = _make_gateway(live_config, mock_session, auditor, recording_sleep)

        assert gw.request("/ping") == {}

    def test_non_json_body_is_invalid_response(
        self, live_config, mock_session, auditor, recording_sleep, make_response
    ):
        mock_session.request.return_value = make_response(200, text="<html>oops</html>")
        gw = _make_gateway(live_config, mock_session, auditor, recording_sleep)

        with pytest.raises(IntegrationError) as exc_info:
            gw.request("/quotes")

        assert exc_info.value.code == "INVALID_RESPONSE"
        assert exc_info.value.retryable is False
        assert mock_session.request.call_count == 1


class TestRequestFailure:
    def test_persistent_503_is_retryable_integration_error(
        self, live_config, mock_session, auditor, audit_sink, recording_sleep, make_response
    ):
        """
        Given a partner answering 503 on every attempt
        When request() runs with the config's 3 attempts / 1s / x2 policy
        Then 3 attempts are made, backoff is [1s, 2s], and one failed audit record is written
        """
        mock_session.request.return_value = make_response(503, text="Service Unavailable")
        gw = _make_gateway(live_config, mock_session, auditor, recording_sleep)

        with pytest.raises(IntegrationError) as exc_info:
            gw.request("/quotes/life", method="POST", json_body={})

        err = exc_info.value
        assert err.code == "HTTP_503"
        assert err.retryable is True
        assert err.details["partner"] == "Echo"
        assert isinstance(err.__cause__, RetryExhaustedError)
        assert mock_session.request.call_count == 3
        assert recording_sleep.delays == [1.0, 2.0]

        (record,) = _audited(auditor, audit_sink)
        assert record.success is False
        assert "503" in record.error

    def test_404_is_not_retried(
        self, live_config, mock_session, auditor, recording_sleep, make_response
    ):
        mock_session.request.return_value = make_response(404, text="not found")
        gw = _make_gateway(live_config, mock_session, auditor, recording_sleep)

        with pytest.raises(IntegrationError) as exc_info:
            gw.request("/carriers/unknown")

        assert exc_info.value.code == "HTTP_404"
        assert exc_info.value.retryable is False
        assert mock_session.request.call_count == 1
        assert recording_sleep.delays == []

    def test_error_body_excerpt_is_bounded(
        self, live_config, mock_session, auditor, recording_sleep, make_response
    ):
        mock_session.request.return_value = make_response(400, text="x" * 2000)
        gw = _make_gateway(live_config, mock_session, auditor, recording_sleep)

        with pytest.raises(IntegrationError) as exc_info:
            gw.request("/quotes")

        assert len(exc_info.value.message) < 600

    def test_timeout_classified_as_etimedout(
        self, live_config, mock_session, auditor, recording_sleep
    ):
        mock_session.request.side_effect = requests.Timeout("read timed out")
        gw = _make_gateway(live_config, mock_session, auditor, recording_sleep)

        with pytest.raises(IntegrationError) as exc_info:
            gw.request("/quotes")

        assert exc_info.value.code == "ETIMEDOUT"
        assert exc_info.value.retryable is True
        assert mock_session.request.call_count == 3

    def test_connection_refused_classified(
        self, live_config, mock_session, auditor, recording_sleep, make_response
    ):
        mock_session.request.side_effect = [
            requests.ConnectionError("[Errno 111] Connection refused"),
            make_response(200, {"ok": True}),
        ]
        gw = _make_gateway(live_config, mock_session, auditor, recording_sleep)

        assert gw.request("/quotes") == {"ok": True}
        assert recording_sleep.delays == [1.0]

    def test_connection_reset_after_retries(
        self, live_config, mock_session, auditor, recording_sleep
    ):
        mock_session.request.side_effect = requests.ConnectionError("Connection aborted.")
        gw = _make_gateway(replace(live_config, retry_attempts=2), mock_session, auditor, recording_sleep)

        with pytest.raises(IntegrationError) as exc_info:
            gw.request("/quotes")

        assert exc_info.value.code == "ECONNRESET"
        assert mock_session.request.call_count == 2

    @pytest.mark.parametrize("config", [
        PartnerConfig(enabled=False, api_key="k"),
        PartnerConfig(enabled=True),
    ])
    def test_not_ready_partner_never_calls_network(
        self, config, mock_session, auditor, recording_sleep
    ):
        gw = _make_gateway(config, mock_session, auditor, recording_sleep)

        with pytest.raises(IntegrationError) as exc_info:
            gw.request("/quotes")

        assert exc_info.value.code == "PARTNER_NOT_CONFIGURED"
        assert mock_session.request.call_count == 0


class TestClassifyError:
    def test_unknown_error(self, live_config, mock_session, auditor):
        err = EchoGateway(live_config, session=mock_session, auditor=auditor).classify_error(
            RuntimeError("boom")
        )

        assert err.code == "UNKNOWN_ERROR"
        assert err.retryable is False
        assert err.to_dict()["message"] == "boom"

    def test_integration_error_passes_through(self, live_config, mock_session, auditor):
        original = IntegrationError("INVALID_RESPONSE", "bad json")
        gw = EchoGateway(live_config, session=mock_session, auditor=auditor)

        assert gw.classify_error(original) is original


class TestHealthCheck:
    def test_disabled_partner_is_unhealthy_without_network(self, mock_session, auditor):
        gw = EchoGateway(PartnerConfig(enabled=False, api_key="k"), session=mock_session, auditor=auditor)

        result = gw.health_check()

        assert result.healthy is False
        assert result.message == "Echo integration is disabled"
        assert mock_session.request.call_count == 0

    def test_missing_credentials_is_unhealthy_without_network(self, mock_session, auditor):
        gw = EchoGateway(PartnerConfig(enabled=True), session=mock_session, auditor=auditor)

        result = gw.health_check()

        assert result.healthy is False
        assert result.message == "Echo API credentials not configured"
        assert mock_session.request.call_count == 0

    def test_healthy_check(self, live_config, mock_session, auditor, make_response):
        mock_session.request.return_value = make_response(200, {"status": "up"})
        gw = EchoGateway(live_config, session=mock_session, auditor=auditor)

        result = gw.health_check()

        assert result.healthy is True
        assert result.response_time_ms is not None
        assert mock_session.request.call_args.args[1] == "https://partner.example.com/v1/health"

    def test_failing_check_is_single_attempt(
        self, live_config, mock_session, auditor, recording_sleep, make_response
    ):
        mock_session.request.return_value = make_response(503, text="down")
        gw = _make_gateway(live_config, mock_session, auditor, recording_sleep)

        result = gw.health_check()

        assert result.healthy is False
        assert "503" in result.message
        assert mock_session.request.call_count == 1
        assert recording_sleep.delays == []

    def test_status_shape(self, mock_session, auditor):
        gw = EchoGateway(PartnerConfig(), session=mock_session, auditor=auditor)

        status = gw.status()

        assert status["name"] == "Echo"
        assert status["enabled"] is False
        assert status["healthy"] is False
        assert set(status["healthCheck"]) == {"healthy", "message", "lastChecked", "responseTime"}


class TestConfigurationHelpers:
    def test_default_retry_policy_from_config(self, live_config, mock_session, auditor):
        cfg = replace(live_config, retry_attempts=4, retry_delay=0.5, retry_delay_base=3.0)
        policy = EchoGateway(cfg, session=mock_session, auditor=auditor).default_retry_policy()

        assert policy.max_attempts == 4
        assert policy.initial_delay == 0.5
        assert policy.backoff_multiplier == 3.0

    def test_base_url_falls_back_to_default(self, mock_session, auditor):
        gw = EchoGateway(PartnerConfig(), session=mock_session, auditor=auditor)
        assert gw.base_url == "https://echo.example.com"

    def test_readiness(self, live_config, mock_session, auditor):
        gw = EchoGateway(live_config, session=mock_session, auditor=auditor)
        assert gw.is_enabled() and gw.is_ready()
        assert not EchoGateway(replace(live_config, api_key=None, api_secret=None),
                               session=mock_session, auditor=auditor).is_ready()
