"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — configuration status of partners and the SAML signer
"""

import logging

from flask import Blueprint, current_app, jsonify

from agency_gateway.config import validate_partner_config

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe — always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Configuration view without calling any partner.

    Live partner probes are served by /api/v1/integrations/health.
    """
    services = current_app.extensions["agency_gateway"]
    partners = {
        name: {
            "enabled": gateway.is_enabled(),
            "ready": gateway.is_ready(),
            **validate_partner_config(name, gateway.config),
        }
        for name, gateway in services.gateways.items()
    }
    return jsonify({
        "status": "ok",
        "partners": partners,
        "saml": {
            "configured": services.saml.is_configured(),
            "ssoEnabled": services.saml.settings.sso_enabled,
            "environment": services.saml.environment.value,
        },
    }), 200
