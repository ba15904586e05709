"""RateWatch gateway — annuity rate comparison.

Annuity quotes carry a guaranteed *rate* rather than a premium, so the
aggregator ranks them by rate (higher first).
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from agency_gateway.core.exceptions import ValidationError
from agency_gateway.integrations.base_gateway import PartnerGateway

logger = logging.getLogger(__name__)


class AnnuityType(str, enum.Enum):
    FIXED = "fixed"
    FIXED_INDEXED = "fixed_indexed"
    VARIABLE = "variable"
    IMMEDIATE = "immediate"
    DEFERRED = "deferred"
    MYGA = "myga"  # multi-year guaranteed annuity


DEFAULT_TERM = 5

_MOCK_CARRIERS = [
    {"name": "American National", "rating": "A", "base_rate": 5.25},
    {"name": "Athene", "rating": "A", "base_rate": 5.40},
    {"name": "Great American", "rating": "A+", "base_rate": 5.15},
    {"name": "Midland National", "rating": "A+", "base_rate": 5.50},
    {"name": "North American", "rating": "A+", "base_rate": 5.35},
    {"name": "Pacific Life", "rating": "A+", "base_rate": 5.20},
]


def _annuity_type(value) -> AnnuityType:
    try:
        return AnnuityType(value or AnnuityType.FIXED.value)
    except ValueError:
        raise ValidationError(
            f"Invalid annuityType. Must be one of: {', '.join(t.value for t in AnnuityType)}",
            details={"annuityType": "is invalid"},
        ) from None


def _premium(value) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValidationError(
            "Comparison premium must be a positive number",
            details={"premium": "must be a positive number"},
        )
    return value


@dataclass(frozen=True)
class RateWatchQuoteRequest:
    annuity_type: AnnuityType
    premium: float
    state: str
    term: int | None = None
    age: int | None = None
    qualified: bool = True

    def to_payload(self) -> dict:
        return {
            "annuityType": self.annuity_type.value,
            "premium": self.premium,
            "term": self.term,
            "state": self.state,
            "age": self.age,
            "qualified": self.qualified,
        }


class RateWatchGateway(PartnerGateway):
    name = "RateWatch"
    default_base_url = "https://api.ratewatch.com/v1"

    def auth_headers(self) -> dict[str, str]:
        if not self.config.api_key:
            return {}
        return {
            "X-API-Key": self.config.api_key,
            "X-API-Secret": self.config.api_secret or "",
        }

    def get_quotes(self, request: RateWatchQuoteRequest, *, user_id: str | None = None) -> dict:
        """Annuity quotes: {success, quotes, requestId, metadata}."""
        if not self.is_ready():
            logger.debug("RateWatch not configured; serving mock quotes")
            return self._mock_quotes(request)
        return self.request(
            "/annuity/quotes", method="POST", json_body=request.to_payload(), user_id=user_id
        )

    def compare_products(self, comparison: dict, *, user_id: str | None = None) -> dict:
        """Side-by-side comparison with RateWatch-side filters and sorting.

        ``comparison`` follows the RateWatch comparison body (annuityType,
        premium, term, state, minRate, includeCarriers, sortBy, ...).

        Raises:
            ValidationError: mock path only, when premium or annuityType is
                missing or invalid.
        """
        if not self.is_ready():
            request = RateWatchQuoteRequest(
                annuity_type=_annuity_type(comparison.get("annuityType")),
                premium=_premium(comparison.get("premium")),
                state=comparison.get("state", ""),
                term=comparison.get("term"),
            )
            return self._mock_quotes(request)
        return self.request("/annuity/compare", method="POST", json_body=comparison, user_id=user_id)

    def get_carrier(self, carrier_id: str) -> dict | None:
        if not self.is_ready():
            return None
        return self.request(f"/carriers/{carrier_id}")

    def get_product(self, product_id: str) -> dict | None:
        if not self.is_ready():
            return None
        return self.request(f"/products/{product_id}")

    def get_historical_rates(
        self,
        product_id: str,
        start_date: str | None = None,
        end_date: str | None = None,
    ) -> dict | None:
        if not self.is_ready():
            return None
        params = {k: v for k, v in (("startDate", start_date), ("endDate", end_date)) if v}
        return self.request(f"/products/{product_id}/history", params=params or None)

    # ── Mock quote source ────────────────────────────────────────────────────

    def _mock_quotes(self, request: RateWatchQuoteRequest) -> dict:
        term = request.term or DEFAULT_TERM
        premium = request.premium
        now = datetime.now(timezone.utc)
        product_label = "MYGA" if request.annuity_type == AnnuityType.MYGA else "Fixed Annuity"

        quotes = []
        for index, carrier in enumerate(_MOCK_CARRIERS):
            guaranteed = round(carrier["base_rate"] + (term - 3) * 0.1, 2)
            accumulated = premium * (1 + guaranteed / 100) ** term
            quotes.append({
                "quoteId": f"RW-{index + 1}-{term}-{int(premium)}",
                "carrierId": f"carrier-{index + 1}",
                "carrierName": carrier["name"],
                "carrierRating": carrier["rating"],
                "productName": f"{term}-Year {product_label}",
                "productId": f"product-{index + 1}",
                "annuityType": request.annuity_type.value,
                "guaranteedRate": guaranteed,
                "currentRate": round(guaranteed + 0.25, 2),
                "term": term,
                "surrenderPeriod": term,
                "minimumPremium": 10000,
                "maximumPremium": 1000000,
                "minimumAge": 0,
                "maximumAge": 85,
                "features": {
                    "deathBenefit": True,
                    "nursingHomeBenefit": index % 2 == 0,
                    "terminalIllnessBenefit": index % 3 == 0,
                    "freeWithdrawal": True,
                    "freeWithdrawalPercentage": 10,
                    "bailoutProvision": index % 2 == 0,
                    "marketValueAdjustment": index % 3 != 0,
                },
                "surrenderSchedule": [
                    {"year": year + 1, "chargePercentage": max(0, term - year - 1)}
                    for year in range(term)
                ],
                "qualified": True,
                "nonQualified": True,
                "effectiveDate": now.isoformat(),
                "expirationDate": (now + timedelta(days=30)).isoformat(),
                "lastUpdated": now.isoformat(),
                "accumulatedValue": round(accumulated, 2),
                "totalInterest": round(accumulated - premium, 2),
            })

        quotes.sort(key=lambda q: q["guaranteedRate"], reverse=True)
        rates = [q["guaranteedRate"] for q in quotes]
        return {
            "success": True,
            "quotes": quotes,
            "requestId": f"RW-MOCK-{term}-{int(premium)}",
            "metadata": {
                "totalResults": len(quotes),
                "averageRate": round(sum(rates) / len(rates), 4),
                "bestRate": max(rates),
                "requestDate": now.isoformat(),
            },
        }
