"""
Agency Integration Gateway
Configuration classes for the Flask App Factory, plus typed partner settings.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])

Partner and SAML settings are resolved here, once, into immutable objects
(PartnerConfig, SAMLSettings). Gateways and services never read the
environment themselves.

Environment variables per partner (<PREFIX> = WINFLEX | IPIPELINE | RATEWATCH):
    <PREFIX>_ENABLED          "true" to allow live calls
    <PREFIX>_API_KEY          API key
    <PREFIX>_API_SECRET       API secret (iPipeline / RateWatch)
    <PREFIX>_BASE_URL         override of the partner's default base URL
    <PREFIX>_TIMEOUT          per-attempt timeout, milliseconds (default 30000)
    <PREFIX>_RETRY_ATTEMPTS   total attempts (default 3)
    <PREFIX>_RETRY_DELAY      initial backoff delay, milliseconds (default 1000)

WinFlex Web SSO (agency login, independent of the WinFlex API key):
    WINFLEX_COMPANY_CODE      LifeLink company code
    WINFLEX_COMPANY_PASSWORD  LifeLink company password
    WINFLEX_SSO_URL           login endpoint (default wfw_sso_login.aspx on winflexweb.com)
"""

from __future__ import annotations

import enum
import logging
import os
import secrets
from dataclasses import dataclass

from agency_gateway.integrations.types import PartnerConfig, WinFlexSSOSettings

logger = logging.getLogger(__name__)

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)

DEFAULT_TIMEOUT_MS = 30000
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_MS = 1000

DEFAULT_IDP_ENTITY_ID = "https://valorinsurance.com/saml/idp"
DEFAULT_PUBLIC_URL = "https://valorinsurance.com"


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() == "true"


def _env_number(name: str, default: float) -> float:
    """Numeric env value; missing, zero or unparsable values fall back to ``default``."""
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default
    return value or default


def partner_config_from_env(prefix: str, default_base_url: str) -> PartnerConfig:
    """Build one partner's PartnerConfig from ``<PREFIX>_*`` variables."""
    return PartnerConfig(
        enabled=_env_flag(f"{prefix}_ENABLED"),
        api_key=os.getenv(f"{prefix}_API_KEY") or None,
        api_secret=os.getenv(f"{prefix}_API_SECRET") or None,
        base_url=os.getenv(f"{prefix}_BASE_URL") or default_base_url,
        timeout=_env_number(f"{prefix}_TIMEOUT", DEFAULT_TIMEOUT_MS) / 1000,
        retry_attempts=int(_env_number(f"{prefix}_RETRY_ATTEMPTS", DEFAULT_RETRY_ATTEMPTS)),
        retry_delay=_env_number(f"{prefix}_RETRY_DELAY", DEFAULT_RETRY_DELAY_MS) / 1000,
    )


PARTNER_ENV = {
    "winflex": ("WINFLEX", "https://api.winflex.com/v1"),
    "ipipeline": ("IPIPELINE", "https://api.ipipeline.com/v1"),
    "ratewatch": ("RATEWATCH", "https://api.ratewatch.com/v1"),
}


def load_partner_configs() -> dict[str, PartnerConfig]:
    return {
        name: partner_config_from_env(prefix, base_url)
        for name, (prefix, base_url) in PARTNER_ENV.items()
    }


def is_partner_ready(cfg: PartnerConfig) -> bool:
    """Enabled, holding credentials and pointing somewhere."""
    return cfg.enabled and cfg.has_credentials and bool(cfg.base_url)


def validate_partner_config(name: str, cfg: PartnerConfig) -> dict:
    """Explain why a partner is not usable.

    Returns:
        {"valid": bool, "errors": [str, ...]}
    """
    errors = []
    if not cfg.enabled:
        errors.append(f"{name} is not enabled (set {name.upper()}_ENABLED=true)")
    if not cfg.has_credentials:
        errors.append(f"{name} requires API credentials")
    if not cfg.base_url:
        errors.append(f"{name} requires a base URL")
    if cfg.timeout <= 0:
        errors.append(f"{name} timeout must be positive")
    if cfg.retry_attempts < 0:
        errors.append(f"{name} retry attempts must be non-negative")
    return {"valid": not errors, "errors": errors}


def winflex_sso_from_env() -> WinFlexSSOSettings:
    return WinFlexSSOSettings(
        company_code=os.getenv("WINFLEX_COMPANY_CODE") or None,
        company_password=os.getenv("WINFLEX_COMPANY_PASSWORD") or None,
        sso_url=os.getenv("WINFLEX_SSO_URL") or WinFlexSSOSettings.sso_url,
    )


# ── SAML / SSO ───────────────────────────────────────────────────────────────

class IPipelineEnvironment(str, enum.Enum):
    UAT = "uat"
    PRODUCTION = "production"


@dataclass(frozen=True)
class SAMLSettings:
    """Signing material and endpoints for iPipeline single sign-on.

    ``private_key`` and ``certificate`` are PEM text. Env values written on a
    single line with literal ``\\n`` sequences are accepted.
    """

    private_key: str | None = None
    certificate: str | None = None
    entity_id: str = DEFAULT_IDP_ENTITY_ID
    environment: IPipelineEnvironment = IPipelineEnvironment.UAT
    sso_enabled: bool = False
    public_url: str = DEFAULT_PUBLIC_URL

    @staticmethod
    def _pem(raw: str | None) -> str | None:
        if not raw:
            return None
        return raw.replace("\\n", "\n").strip()

    @classmethod
    def from_env(cls) -> "SAMLSettings":
        raw_env = (os.getenv("IPIPELINE_ENVIRONMENT") or "uat").strip().lower()
        try:
            environment = IPipelineEnvironment(raw_env)
        except ValueError:
            logger.warning("Unknown IPIPELINE_ENVIRONMENT=%r, falling back to uat", raw_env)
            environment = IPipelineEnvironment.UAT
        return cls(
            private_key=cls._pem(os.getenv("IPIPELINE_SAML_PRIVATE_KEY")),
            certificate=cls._pem(os.getenv("IPIPELINE_SAML_CERTIFICATE")),
            entity_id=os.getenv("IPIPELINE_ENTITY_ID") or DEFAULT_IDP_ENTITY_ID,
            environment=environment,
            sso_enabled=_env_flag("IPIPELINE_SSO_ENABLED"),
            public_url=(os.getenv("APP_PUBLIC_URL") or DEFAULT_PUBLIC_URL).rstrip("/"),
        )


# ── Flask configuration classes ──────────────────────────────────────────────

class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # Audit worker buffer (records waiting to be written)
    AUDIT_BUFFER_SIZE = int(os.getenv("AUDIT_BUFFER_SIZE", "1000"))
    # Threads used for partner fan-out; 0 = one per provider
    QUOTE_FANOUT_WORKERS = int(os.getenv("QUOTE_FANOUT_WORKERS", "0"))


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    AUDIT_BUFFER_SIZE = 100


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False

    def __init__(self):
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
