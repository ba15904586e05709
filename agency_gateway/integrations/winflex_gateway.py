"""WinFlex gateway — multi-carrier life insurance quoting and WinFlex Web SSO.

Bearer-token auth (base behaviour). When WinFlex is disabled or has no API
key, quote and carrier lookups are answered from a local carrier table
instead of the network.

SSO is a separate agency login: a LifeLink ``WF_AGENCY`` document carrying
the company code / password is form-posted as ``llXML`` to the WinFlex Web
login endpoint, which answers with a one-time redirect URL for the agent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from xml.etree import ElementTree as ET

import requests

from agency_gateway.core.exceptions import ConfigurationError, IntegrationError, ValidationError
from agency_gateway.integrations.base_gateway import PartnerGateway
from agency_gateway.integrations.types import PartnerConfig, RetryPolicy, WinFlexSSOSettings

logger = logging.getLogger(__name__)

MOCK_CARRIERS = [
    {
        "id": "prudential",
        "name": "Prudential",
        "enabled": True,
        "ratings": {"amBest": "A+", "sp": "AA-", "moodys": "Aa3"},
        "products": ["term", "whole-life", "universal-life"],
    },
    {
        "id": "pacific-life",
        "name": "Pacific Life",
        "enabled": True,
        "ratings": {"amBest": "A+", "sp": "A+", "moodys": "Aa3"},
        "products": ["term", "whole-life", "universal-life"],
    },
    {
        "id": "nationwide",
        "name": "Nationwide",
        "enabled": True,
        "ratings": {"amBest": "A+", "sp": "AA-"},
        "products": ["term", "whole-life"],
    },
    {
        "id": "banner-life",
        "name": "Banner Life",
        "enabled": True,
        "ratings": {"amBest": "A+", "sp": "AA"},
        "products": ["term"],
    },
    {
        "id": "aig",
        "name": "AIG",
        "enabled": True,
        "ratings": {"amBest": "A", "sp": "A"},
        "products": ["term", "universal-life"],
    },
]

_HEALTH_MULTIPLIERS = {
    "Preferred Plus": 0.8,
    "Preferred": 0.9,
    "Standard Plus": 1.0,
    "Standard": 1.15,
    "Substandard": 1.5,
}

_PRODUCT_MULTIPLIERS = {
    "Whole Life": 3.5,
    "Universal Life": 2.5,
    "Variable Universal Life": 3.0,
}


@dataclass(frozen=True)
class WinFlexQuoteRequest:
    age: int
    gender: str
    state: str
    tobacco: str
    health_class: str
    product_type: str
    face_amount: float
    term: int | None = None
    carriers: tuple[str, ...] | None = None

    def to_payload(self) -> dict:
        payload = {
            "applicant": {
                "age": self.age,
                "gender": self.gender,
                "state": self.state,
                "tobacco": self.tobacco,
                "healthClass": self.health_class,
            },
            "product": {
                "type": self.product_type,
                "faceAmount": self.face_amount,
                "term": self.term,
            },
        }
        if self.carriers:
            payload["carriers"] = list(self.carriers)
        return payload


LIFELINK_NS = "urn:lifelink-schema"
DEFAULT_SSO_COMPANY_NAME = "Valor Financial Specialists"

# Optional <Profile> children, in LifeLink order, between LastName and Email.
_PROFILE_OPTIONAL = (
    ("CompanyName", "company_name"),
    ("Address1", "address1"),
    ("City", "city"),
    ("State", "state"),
    ("Zip", "zip"),
    ("Phone", "phone"),
)


@dataclass(frozen=True)
class WinFlexSSORequest:
    user_id: str
    first_name: str
    last_name: str
    email: str
    company_name: str | None = DEFAULT_SSO_COMPANY_NAME
    address1: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    phone: str | None = None
    auto_create: bool = True

    @classmethod
    def from_dict(cls, payload: Any) -> "WinFlexSSORequest":
        """Build from the SSO route's JSON body.

        Raises:
            ValidationError: body is not an object, or userId / firstName /
                lastName / email is missing.
        """
        if not isinstance(payload, dict):
            raise ValidationError("SSO request body must be a JSON object")
        missing = [f for f in ("userId", "firstName", "lastName", "email") if not payload.get(f)]
        if missing:
            raise ValidationError(
                "Missing required fields: userId, firstName, lastName, email",
                details={f: "is required" for f in missing},
            )

        def text(key: str) -> str | None:
            value = payload.get(key)
            return str(value) if value not in (None, "") else None

        auto_create = payload.get("autoCreate")
        return cls(
            user_id=str(payload["userId"]),
            first_name=str(payload["firstName"]),
            last_name=str(payload["lastName"]),
            email=str(payload["email"]),
            company_name=text("companyName") or DEFAULT_SSO_COMPANY_NAME,
            address1=text("address1"),
            city=text("city"),
            state=text("state"),
            zip=text("zip"),
            phone=text("phone"),
            auto_create=True if auto_create is None else bool(auto_create),
        )


def _ll(tag: str) -> str:
    return f"{{{LIFELINK_NS}}}{tag}"


def build_sso_xml(request: WinFlexSSORequest, company_code: str, company_password: str) -> str:
    """LifeLink WF_AGENCY login document (UTF-8 XML text)."""
    root = ET.Element(_ll("LifeLink"))
    ll = ET.SubElement(root, _ll("LL"), LoginType="WF_AGENCY")
    ET.SubElement(ll, _ll("UserName")).text = request.user_id
    ET.SubElement(ll, _ll("WFCompanyCode")).text = company_code
    ET.SubElement(ll, _ll("WFCompanyPassword")).text = company_password
    ET.SubElement(ll, _ll("InterfaceType")).text = "GUI"
    ET.SubElement(ll, _ll("OutputType")).text = "URL"
    tool = ET.SubElement(ll, _ll("Tool"))
    ET.SubElement(tool, _ll("Name")).text = "WinFlex"

    if request.auto_create:
        winflex = ET.SubElement(root, _ll("WinFlex"))
        profile = ET.SubElement(winflex, _ll("Profile"), AutoCreate="true", AutoEmail="false")
        ET.SubElement(profile, _ll("FirstName")).text = request.first_name
        ET.SubElement(profile, _ll("LastName")).text = request.last_name
        for tag, attr in _PROFILE_OPTIONAL:
            value = getattr(request, attr)
            if value:
                ET.SubElement(profile, _ll(tag)).text = value
        ET.SubElement(profile, _ll("Email")).text = request.email

    document = ET.tostring(
        root, encoding="utf-8", xml_declaration=True, default_namespace=LIFELINK_NS
    )
    return document.decode("utf-8")


class WinFlexGateway(PartnerGateway):
    name = "WinFlex"
    default_base_url = "https://api.winflex.com/v1"

    def __init__(self, config: PartnerConfig, *, sso: WinFlexSSOSettings | None = None, **kwargs) -> None:
        super().__init__(config, **kwargs)
        self.sso = sso or WinFlexSSOSettings()

    def get_quotes(self, request: WinFlexQuoteRequest, *, user_id: str | None = None) -> dict:
        """Life quotes from every matching carrier.

        Returns the WinFlex response shape: {success, quotes, message?, requestId}.
        Raises IntegrationError when a live call fails.
        """
        if not self.is_ready():
            logger.debug("WinFlex not configured; serving mock quotes")
            return self._mock_quotes(request)
        return self.request(
            "/quotes/life", method="POST", json_body=request.to_payload(), user_id=user_id
        )

    def get_carriers(self) -> list[dict]:
        if not self.is_ready():
            return [dict(c) for c in MOCK_CARRIERS]
        return self.request("/carriers").get("carriers", [])

    def get_products(self, carrier_id: str) -> list[dict]:
        if not self.is_ready():
            return []
        return self.request(f"/carriers/{carrier_id}/products").get("products", [])

    # ── WinFlex Web SSO ──────────────────────────────────────────────────────

    def start_sso(self, request: WinFlexSSORequest, *, user_id: str | None = None) -> str:
        """Log the agent into WinFlex Web and return the redirect URL.

        Single attempt: the login endpoint mints a one-time session.

        Raises:
            ConfigurationError: company code / password not configured.
            IntegrationError:   WinFlex disabled (``PARTNER_NOT_CONFIGURED``),
                                HTTP / transport failure, or a response that
                                is not a URL (``INVALID_RESPONSE``).
        """
        if not self.config.enabled:
            raise IntegrationError(
                "PARTNER_NOT_CONFIGURED",
                "WinFlex integration is not enabled",
                details={"partner": self.name},
            )
        if not self.sso.is_configured:
            raise ConfigurationError("WinFlex credentials not configured")

        xml = build_sso_xml(request, self.sso.company_code, self.sso.company_password)
        return self._dispatch(
            self.sso.sso_url,
            "/sso",
            method="POST",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            form_body={"llXML": xml},
            retry_policy=RetryPolicy(max_attempts=1),
            user_id=user_id or request.user_id,
            audit_body={
                "loginType": "WF_AGENCY",
                "userName": request.user_id,
                "wfCompanyCode": self.sso.company_code,
                "wfCompanyPassword": self.sso.company_password,
                "autoCreate": request.auto_create,
            },
            parse=self._parse_redirect_url,
            audit_response=False,
        )

    def _parse_redirect_url(self, resp: requests.Response) -> str:
        redirect_url = (resp.text or "").strip()
        if not redirect_url.startswith("http"):
            raise IntegrationError(
                "INVALID_RESPONSE",
                "Invalid response from WinFlex",
                details={"partner": self.name, "body": redirect_url[:200]},
            )
        return redirect_url

    # ── Mock quote source ────────────────────────────────────────────────────

    @staticmethod
    def _base_premium(age: int, face_amount: float, product_type: str) -> float:
        # Monthly rate per $1,000 of coverage.
        rate = 0.5
        if age < 30:
            rate *= 0.6
        elif age < 40:
            rate *= 0.8
        elif age < 50:
            rate *= 1.2
        elif age < 60:
            rate *= 1.8
        else:
            rate *= 2.5
        rate *= _PRODUCT_MULTIPLIERS.get(product_type, 1.0)
        return face_amount / 1000 * rate

    def _mock_quotes(self, request: WinFlexQuoteRequest) -> dict:
        monthly = self._base_premium(request.age, request.face_amount, request.product_type)
        monthly *= _HEALTH_MULTIPLIERS.get(request.health_class, 1.0)
        monthly *= {"Current": 2.0, "Former": 1.3}.get(request.tobacco, 1.0)
        monthly *= 0.9 if request.gender == "Female" else 1.0

        carriers = MOCK_CARRIERS
        if request.carriers:
            carriers = [c for c in MOCK_CARRIERS if c["id"] in request.carriers]

        now = datetime.now(timezone.utc)
        slug = request.product_type.lower().replace(" ", "-")
        quotes = []
        for index, carrier in enumerate(carriers):
            monthly_premium = round(monthly * (0.9 + index * 0.05), 2)
            quotes.append({
                "quoteId": f"WF-{carrier['id']}-{slug}-{request.age}-{int(request.face_amount)}",
                "carrierId": carrier["id"],
                "carrierName": carrier["name"],
                "productId": f"{carrier['id']}-{slug}",
                "productName": " ".join(
                    p for p in (carrier["name"], request.product_type, str(request.term or "")) if p
                ),
                "monthlyPremium": monthly_premium,
                "annualPremium": round(monthly_premium * 12, 2),
                "guaranteedYears": request.term or 10,
                "faceAmount": request.face_amount,
                "term": request.term,
                "ratings": dict(carrier["ratings"]),
                "features": {
                    "convertible": request.product_type == "Term",
                    "renewable": request.product_type == "Term",
                    "livingBenefits": True,
                    "acceleratedDeathBenefit": True,
                    "waiverOfPremium": True,
                },
                "underwritingType": (
                    "Simplified" if request.health_class in ("Preferred Plus", "Preferred") else "Full"
                ),
                "quoteDate": now.isoformat(),
                "expirationDate": (now + timedelta(days=30)).isoformat(),
            })

        quotes.sort(key=lambda q: q["monthlyPremium"])
        return {
            "success": True,
            "quotes": quotes,
            "message": "Mock quotes generated successfully",
            "requestId": f"WF-MOCK-{request.age}-{int(request.face_amount)}",
        }
