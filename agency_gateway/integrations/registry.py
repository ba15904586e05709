"""Explicit construction of the partner gateways.

There are no module-level client singletons: the app factory (or a test)
calls ``build_gateways()`` once and passes the result to whoever needs it.
"""

from __future__ import annotations

import time
from typing import Any, Callable

from agency_gateway.integrations.audit import IntegrationAuditor
from agency_gateway.integrations.base_gateway import PartnerGateway
from agency_gateway.integrations.ipipeline_gateway import IPipelineGateway
from agency_gateway.integrations.ratewatch_gateway import RateWatchGateway
from agency_gateway.integrations.types import PartnerConfig, WinFlexSSOSettings
from agency_gateway.integrations.winflex_gateway import WinFlexGateway

GATEWAY_CLASSES: dict[str, type[PartnerGateway]] = {
    "winflex": WinFlexGateway,
    "ipipeline": IPipelineGateway,
    "ratewatch": RateWatchGateway,
}


def build_gateways(
    configs: dict[str, PartnerConfig],
    *,
    session: Any | None = None,
    auditor: IntegrationAuditor | None = None,
    sleep: Callable[[float], None] = time.sleep,
    winflex_sso: WinFlexSSOSettings | None = None,
) -> dict[str, PartnerGateway]:
    """Instantiate one gateway per known partner.

    Partners missing from ``configs`` get a default (disabled) PartnerConfig.
    A single auditor is shared so all partners feed the same audit worker.
    ``winflex_sso`` carries the WinFlex Web agency login credentials.
    """
    shared_auditor = auditor or IntegrationAuditor()
    options = {"winflex": {"sso": winflex_sso}}
    return {
        key: cls(
            configs.get(key) or PartnerConfig(),
            session=session,
            auditor=shared_auditor,
            sleep=sleep,
            **options.get(key, {}),
        )
        for key, cls in GATEWAY_CLASSES.items()
    }
