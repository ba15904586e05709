"""
Shared pytest fixtures for the Agency Integration Gateway test suite.

Provides:
    - recording_sleep: sleep stand-in that records requested delays
    - audit_sink / auditor: IntegrationAuditor writing into an in-memory sink
    - make_response: factory for fake requests.Response objects
    - mock_session: MagicMock standing in for requests.Session
    - signing_material: RSA key + self-signed certificate (session-scoped)
    - saml_settings: SAMLSettings using signing_material
    - app / client: Flask app wired with mock-path gateways and a real signer
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from agency_gateway import GatewayServices, create_app
from agency_gateway.config import SAMLSettings
from agency_gateway.integrations.audit import IntegrationAuditor
from agency_gateway.integrations.registry import build_gateways
from agency_gateway.integrations.types import PartnerConfig
from agency_gateway.services.quote_aggregator import QuoteAggregator
from agency_gateway.services.saml_assertion_service import SAMLAssertionService


# ── Small collaborators ──────────────────────────────────────────────────


class RecordingSleep:
    """Callable replacing time.sleep; keeps every requested delay."""

    def __init__(self):
        self.delays: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class ListAuditSink:
    def __init__(self):
        self.records = []

    def write(self, record):
        self.records.append(record)


@pytest.fixture()
def recording_sleep():
    return RecordingSleep()


@pytest.fixture()
def audit_sink():
    return ListAuditSink()


@pytest.fixture()
def auditor(audit_sink):
    a = IntegrationAuditor(audit_sink)
    yield a
    a.close()


def _fake_response(status: int = 200, body=None, text: str | None = None) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    if body is not None:
        raw = json.dumps(body)
        resp.json.return_value = body
    else:
        raw = text or ""
        resp.json.side_effect = ValueError("No JSON object could be decoded")
    resp.text = raw
    resp.content = raw.encode("utf-8")
    return resp


@pytest.fixture()
def make_response():
    return _fake_response


@pytest.fixture()
def mock_session():
    return MagicMock(name="requests.Session")


@pytest.fixture()
def live_config():
    """Enabled partner with credentials and fast, deterministic retries."""
    return PartnerConfig(
        enabled=True,
        api_key="key-123",
        api_secret="secret-456",
        base_url="https://partner.example.com/v1/",
        timeout=5.0,
        retry_attempts=3,
        retry_delay=1.0,
        retry_delay_base=2.0,
    )


# ── SAML signing material ────────────────────────────────────────────────


@pytest.fixture(scope="session")
def signing_material():
    """(private_key_pem, certificate_pem, public_key) for a throwaway IdP."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "test-idp.example.com")])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .sign(key, hashes.SHA256())
    )
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
    return key_pem, cert_pem, key.public_key()


@pytest.fixture()
def saml_settings(signing_material):
    key_pem, cert_pem, _ = signing_material
    return SAMLSettings(
        private_key=key_pem,
        certificate=cert_pem,
        entity_id="https://test-idp.example.com/saml/idp",
        sso_enabled=True,
        public_url="https://agents.example.com",
    )


# ── App & client ─────────────────────────────────────────────────────────


@pytest.fixture()
def services(saml_settings, mock_session, auditor):
    """Gateways left disabled so every quote comes from the mock source."""
    gateways = build_gateways({}, session=mock_session, auditor=auditor)
    return GatewayServices(
        gateways=gateways,
        auditor=auditor,
        aggregator=QuoteAggregator.from_gateways(gateways),
        saml=SAMLAssertionService(saml_settings),
    )


@pytest.fixture()
def app(services):
    return create_app("testing", services=services)


@pytest.fixture()
def client(app):
    return app.test_client()
