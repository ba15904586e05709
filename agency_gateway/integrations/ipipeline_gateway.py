"""iPipeline gateway — term life quotes and electronic applications.

iPipeline authenticates with an API key / secret header pair instead of a
bearer token. SAML single sign-on into iPipeline products lives in
services.saml_assertion_service, not here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from agency_gateway.integrations.base_gateway import PartnerGateway

logger = logging.getLogger(__name__)

_MOCK_CARRIERS = [
    {"name": "Protective Life", "code": "PROT", "rating": "A+", "multiplier": 0.85},
    {"name": "Prudential", "code": "PRUD", "rating": "AA+", "multiplier": 0.95},
    {"name": "Lincoln Financial", "code": "LINC", "rating": "A+", "multiplier": 0.90},
    {"name": "Banner Life", "code": "BANN", "rating": "A+", "multiplier": 0.88},
    {"name": "AIG", "code": "AIG", "rating": "A", "multiplier": 1.00},
]


@dataclass(frozen=True)
class IPipelineQuoteRequest:
    age: int
    gender: str
    state: str
    tobacco: str
    health_class: str
    face_amount: float
    term: int
    product_type: str = "Term"

    def to_payload(self) -> dict:
        return {
            "applicant": {
                "age": self.age,
                "gender": self.gender,
                "state": self.state,
                "tobacco": self.tobacco,
                "healthClass": self.health_class,
            },
            "product": {
                "type": self.product_type,
                "term": self.term,
                "faceAmount": self.face_amount,
            },
        }


class IPipelineGateway(PartnerGateway):
    name = "iPipeline"
    default_base_url = "https://api.ipipeline.com/v1"

    def auth_headers(self) -> dict[str, str]:
        if not self.config.api_key:
            return {}
        return {
            "X-API-Key": self.config.api_key,
            "X-API-Secret": self.config.api_secret or "",
        }

    def get_term_quotes(self, request: IPipelineQuoteRequest, *, user_id: str | None = None) -> dict:
        """Term quotes: {success, quotes, requestId, timestamp, metadata?}."""
        if not self.is_ready():
            logger.debug("iPipeline not configured; serving mock quotes")
            return self._mock_quotes(request)
        return self.request(
            "/quotes/term", method="POST", json_body=request.to_payload(), user_id=user_id
        )

    def start_electronic_application(self, application: dict, *, user_id: str | None = None) -> dict:
        """Start an e-application for a previously returned quote.

        ``application`` carries applicant PII (possibly an SSN); it is only
        ever audited in sanitized form.
        """
        if not self.is_ready():
            return {
                "success": True,
                "applicationId": f"mock-app-{application.get('quoteId', 'unknown')}",
                "applicationUrl": "https://mock.ipipeline.com/application/mock-app",
                "status": "pending",
                "message": "Mock application created (iPipeline not configured)",
            }
        return self.request("/applications", method="POST", json_body=application, user_id=user_id)

    def get_application_status(self, application_id: str) -> dict:
        if not self.is_ready():
            now = datetime.now(timezone.utc).isoformat()
            return {
                "applicationId": application_id,
                "status": "in_progress",
                "carrierName": "Mock Carrier",
                "productName": "Mock Term Life 20",
                "faceAmount": 500000,
                "applicantName": "Mock Applicant",
                "createdAt": now,
                "updatedAt": now,
                "statusDetails": "Application in progress",
            }
        return self.request(f"/applications/{application_id}")

    # ── Mock quote source ────────────────────────────────────────────────────

    @staticmethod
    def _base_premium(age: int, face_amount: float) -> float:
        per_thousand = 0.08 * (1 + (age - 30) * 0.02)
        return round(face_amount / 1000 * per_thousand, 2)

    def _mock_quotes(self, request: IPipelineQuoteRequest) -> dict:
        base = self._base_premium(request.age, request.face_amount)
        now = datetime.now(timezone.utc)

        quotes = []
        for index, carrier in enumerate(_MOCK_CARRIERS):
            monthly = round(base * carrier["multiplier"], 2)
            annual = round(monthly * 12, 2)
            quotes.append({
                "quoteId": f"IPL-{carrier['code']}-{request.term}-{int(request.face_amount)}",
                "carrierName": carrier["name"],
                "carrierCode": carrier["code"],
                "productName": f"{request.product_type} {request.term}-Year",
                "productType": request.product_type,
                "monthlyPremium": monthly,
                "annualPremium": annual,
                "totalPremium": round(annual * request.term, 2),
                "faceAmount": request.face_amount,
                "term": request.term,
                "carrierRating": carrier["rating"],
                "ratingAgency": "AM Best",
                "features": {
                    "returnOfPremium": request.product_type == "ROP",
                    "convertible": request.product_type == "Convertible Term" or index % 2 == 0,
                    "renewableToAge": 95 if request.term >= 20 else None,
                    "acceleratedDeathBenefit": True,
                    "waiverOfPremium": index < 3,
                    "terminalIllnessRider": True,
                    "childRider": index % 2 == 0,
                },
                "underwritingClass": request.health_class,
                "quoteDate": now.isoformat(),
                "expirationDate": (now + timedelta(days=30)).isoformat(),
                "applicationUrl": f"https://mock.ipipeline.com/apply/{carrier['code']}",
                "eAppAvailable": True,
            })

        quotes.sort(key=lambda q: q["monthlyPremium"])
        premiums = [q["monthlyPremium"] for q in quotes]
        return {
            "success": True,
            "quotes": quotes,
            "requestId": f"IPL-MOCK-{request.term}-{int(request.face_amount)}",
            "timestamp": now.isoformat(),
            "metadata": {
                "totalCarriers": len(quotes),
                "averagePremium": round(sum(premiums) / len(premiums), 2),
                "lowestPremium": min(premiums),
                "highestPremium": max(premiums),
            },
        }
