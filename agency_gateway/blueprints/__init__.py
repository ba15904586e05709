"""
Agency Integration Gateway
Blueprint registry.
"""

from agency_gateway.blueprints.health_bp import health_bp
from agency_gateway.blueprints.integrations_bp import integrations_bp

ALL_BLUEPRINTS = (health_bp, integrations_bp)
