"""Partner integrations blueprint.

REST surface over the quote aggregator, the iPipeline SAML signer and the
WinFlex Web SSO handoff.

Endpoint groups:
  Aggregated quoting      POST /api/v1/quotes/aggregated
  Partner health          GET  /api/v1/integrations/health
  iPipeline SSO           POST /api/v1/integrations/ipipeline/sso
                          GET  /api/v1/integrations/ipipeline/metadata
  WinFlex Web SSO         POST /api/v1/integrations/winflex/sso
                          GET  /api/v1/integrations/winflex/sso

Dependencies (aggregator, gateways, SAML service) are built once by
create_app() and read from ``current_app.extensions["agency_gateway"]``.
"""

from __future__ import annotations

import logging

from flask import Blueprint, Response, current_app, jsonify, request

from agency_gateway.core.exceptions import ConfigurationError, IntegrationError, ValidationError
from agency_gateway.integrations.winflex_gateway import WinFlexSSORequest
from agency_gateway.services.quote_aggregator import UnifiedQuoteRequest
from agency_gateway.services.saml_assertion_service import SSOAssertionRequest

logger = logging.getLogger(__name__)

integrations_bp = Blueprint("integrations", __name__, url_prefix="/api/v1")


def _services():
    return current_app.extensions["agency_gateway"]


# ── Error handlers ────────────────────────────────────────────────────────────


@integrations_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return jsonify({"success": False, "error": str(error), "details": error.details}), 400


@integrations_bp.errorhandler(ConfigurationError)
def _handle_configuration(error: ConfigurationError):
    logger.error("Integration misconfigured endpoint=%s: %s", request.endpoint, error)
    return jsonify({"success": False, "error": str(error)}), 500


@integrations_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    logger.exception("Unexpected error in integrations_bp endpoint=%s", request.endpoint)
    return jsonify({"success": False, "error": "Internal server error"}), 500


# ═════════════════════════════════════════════════════════════════════════
# Quotes
# ═════════════════════════════════════════════════════════════════════════


@integrations_bp.route("/quotes/aggregated", methods=["POST"])
def aggregated_quotes():
    """Fan a quote request out to every applicable partner.

    Body: UnifiedQuoteRequest JSON (clientInfo, healthInfo, product, filters?).
    Returns 200 even when some partners failed; see ``providers``.
    """
    quote_request = UnifiedQuoteRequest.from_dict(request.get_json(silent=True))
    result = _services().aggregator.aggregate(quote_request)
    return jsonify(result.to_dict()), 200


@integrations_bp.route("/integrations/health", methods=["GET"])
def providers_health():
    return jsonify(_services().aggregator.providers_health().to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# iPipeline SSO
# ═════════════════════════════════════════════════════════════════════════


@integrations_bp.route("/integrations/ipipeline/sso", methods=["POST"])
def ipipeline_sso():
    """Return a signed SAMLResponse + RelayState for the browser to POST to iPipeline."""
    saml = _services().saml
    if not saml.settings.sso_enabled:
        return jsonify({"success": False, "error": "iPipeline SSO is not enabled"}), 400

    sso_request = SSOAssertionRequest.from_dict(request.get_json(silent=True))
    signed = saml.generate_assertion(sso_request)
    return jsonify({
        "success": True,
        "samlResponse": signed.saml_response,
        "relayState": signed.relay_state,
        "acsUrl": signed.acs_url,
        "message": "SAML response generated successfully",
    }), 200


@integrations_bp.route("/integrations/ipipeline/metadata", methods=["GET"])
def ipipeline_metadata():
    saml = _services().saml
    if not saml.is_configured():
        return jsonify({"success": False, "error": "SAML signing is not configured"}), 503
    return Response(saml.generate_idp_metadata(), status=200, mimetype="application/xml")


# ═════════════════════════════════════════════════════════════════════════
# WinFlex Web SSO
# ═════════════════════════════════════════════════════════════════════════


@integrations_bp.route("/integrations/winflex/sso", methods=["POST"])
def winflex_sso():
    """Log the agent into WinFlex Web; returns the redirect URL to open."""
    gateway = _services().gateways["winflex"]
    if not gateway.is_enabled():
        return jsonify({"success": False, "error": "WinFlex integration is not enabled"}), 400

    sso_request = WinFlexSSORequest.from_dict(request.get_json(silent=True))
    try:
        redirect_url = gateway.start_sso(sso_request)
    except IntegrationError as exc:
        error = (
            "Invalid response from WinFlex" if exc.code == "INVALID_RESPONSE"
            else "Failed to authenticate with WinFlex"
        )
        return jsonify({"success": False, "error": error}), 502

    return jsonify({
        "success": True,
        "redirectUrl": redirect_url,
        "message": "SSO authentication successful. Open URL in new window.",
    }), 200


@integrations_bp.route("/integrations/winflex/sso", methods=["GET"])
def winflex_sso_status():
    gateway = _services().gateways["winflex"]
    return jsonify({
        "enabled": gateway.is_enabled(),
        "configured": gateway.sso.is_configured,
        "companyCode": gateway.sso.masked_company_code(),
    }), 200
