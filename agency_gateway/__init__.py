"""
Agency Integration Gateway
Flask Application Factory.

Usage:
    from agency_gateway import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os
from dataclasses import dataclass

from flask import Flask

from agency_gateway.config import SAMLSettings, config, load_partner_configs, winflex_sso_from_env
from agency_gateway.integrations.audit import IntegrationAuditor
from agency_gateway.integrations.base_gateway import PartnerGateway
from agency_gateway.integrations.registry import build_gateways
from agency_gateway.middleware.logging_config import configure_logging
from agency_gateway.services.quote_aggregator import QuoteAggregator
from agency_gateway.services.saml_assertion_service import SAMLAssertionService

logger = logging.getLogger(__name__)


@dataclass
class GatewayServices:
    """Everything the blueprints need, built once per app."""

    gateways: dict[str, PartnerGateway]
    auditor: IntegrationAuditor
    aggregator: QuoteAggregator
    saml: SAMLAssertionService


def build_services(app_config) -> GatewayServices:
    """Resolve env configuration into live gateways and services."""
    auditor = IntegrationAuditor(buffer_size=app_config.get("AUDIT_BUFFER_SIZE", 1000))
    gateways = build_gateways(
        load_partner_configs(), auditor=auditor, winflex_sso=winflex_sso_from_env()
    )
    return GatewayServices(
        gateways=gateways,
        auditor=auditor,
        aggregator=QuoteAggregator.from_gateways(
            gateways, max_workers=app_config.get("QUOTE_FANOUT_WORKERS") or None
        ),
        saml=SAMLAssertionService(SAMLSettings.from_env()),
    )


def create_app(config_name=None, services=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.
        services:    Pre-built GatewayServices (tests inject mocked gateways).
                     Built from the environment when omitted.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Integration services ─────────────────────────────────────────────
    if services is None:
        services = build_services(app.config)
    app.extensions["agency_gateway"] = services

    ready = [name for name, gw in services.gateways.items() if gw.is_ready()]
    logger.info(
        "Partner gateways: %s live, %s mock; SAML signer %s",
        ", ".join(ready) or "none",
        ", ".join(n for n in services.gateways if n not in ready) or "none",
        "configured" if services.saml.is_configured() else "not configured",
    )

    # ── Blueprints ───────────────────────────────────────────────────────
    from agency_gateway.blueprints import ALL_BLUEPRINTS

    for bp in ALL_BLUEPRINTS:
        app.register_blueprint(bp)

    return app
