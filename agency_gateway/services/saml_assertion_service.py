"""
SAML Assertion Service — IdP-initiated SSO hand-off into iPipeline products.

We act as the identity provider: the agent is already authenticated here, and
the browser is handed a signed SAML 2.0 Response to POST to iPipeline's ACS
together with a RelayState naming the target product (iGO, LifePipe, ...).

Pipeline
────────
1. Build the iGo profile blob (ApplicationData) and the fixed attributes
2. Build the unsigned Response tree (ElementTree)
3. Digest the canonical Response (enveloped-signature semantics)
4. Sign the canonical SignedInfo with RSA-SHA256
5. Insert <ds:Signature> right after the Response's <saml:Issuer>
6. Base64-encode the UTF-8 document

An assertion is never emitted unsigned: missing or unloadable signing
material raises ConfigurationError before any document is built.
"""

from __future__ import annotations

import base64
import enum
import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from xml.etree import ElementTree as ET

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from agency_gateway.config import IPipelineEnvironment, SAMLSettings
from agency_gateway.core.exceptions import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Constants
# ═════════════════════════════════════════════════════════════════════════════

_SAML_NS = {
    "saml": "urn:oasis:names:tc:SAML:2.0:assertion",
    "samlp": "urn:oasis:names:tc:SAML:2.0:protocol",
    "ds": "http://www.w3.org/2000/09/xmldsig#",
    "md": "urn:oasis:names:tc:SAML:2.0:metadata",
}
for _prefix, _uri in _SAML_NS.items():
    ET.register_namespace(_prefix, _uri)

_XML_LANG = "{http://www.w3.org/XML/1998/namespace}lang"

ALG_EXC_C14N = "http://www.w3.org/2001/10/xml-exc-c14n#"
ALG_ENVELOPED = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"
ALG_RSA_SHA256 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"
ALG_SHA256 = "http://www.w3.org/2001/04/xmlenc#sha256"

STATUS_SUCCESS = "urn:oasis:names:tc:SAML:2.0:status:Success"
NAMEID_UNSPECIFIED = "urn:oasis:names:tc:SAML:1.1:nameid-format:unspecified"
CM_BEARER = "urn:oasis:names:tc:SAML:2.0:cm:bearer"
AC_UNSPECIFIED = "urn:oasis:names:tc:SAML:2.0:ac:classes:unspecified"
ATTRNAME_BASIC = "urn:oasis:names:tc:SAML:2.0:attrname-format:basic"
BINDING_HTTP_POST = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"

# Agency identifiers assigned by iPipeline.
COMPANY_IDENTIFIER = "2717"
CHANNEL_NAME = "VAL"
USER_GROUPS = "02717-UsersGroup"

VALIDITY_WINDOW = timedelta(minutes=5)


class IPipelineProduct(str, enum.Enum):
    IGO = "igo"
    LIFEPIPE = "lifepipe"
    FORMSPIPE = "formspipe"
    XRAE = "xrae"
    PRODUCTINFO = "productinfo"


IPIPELINE_ENDPOINTS = {
    "acs": {
        IPipelineEnvironment.UAT: "https://federate-uat.ipipeline.com/sp/ACS.saml2",
        IPipelineEnvironment.PRODUCTION: "https://federate.ipipeline.com/sp/ACS.saml2",
    },
    "sp_entity_id": {
        IPipelineEnvironment.UAT: "https://federate-uat.ipipeline.com",
        IPipelineEnvironment.PRODUCTION: "https://federate.ipipeline.com",
    },
    "products": {
        IPipelineProduct.IGO: {
            IPipelineEnvironment.UAT: "https://pipepasstoigo-uat.ipipeline.com/default.aspx?gaid=2717",
            IPipelineEnvironment.PRODUCTION: "https://pipepasstoigo.ipipeline.com/default.aspx?gaid=2717",
        },
        IPipelineProduct.LIFEPIPE: {
            IPipelineEnvironment.UAT: "https://quote-uat.ipipeline.com/LTSearch.aspx?GAID=2717",
            IPipelineEnvironment.PRODUCTION: "https://quote.ipipeline.com/LTSearch.aspx?GAID=2717",
        },
        IPipelineProduct.FORMSPIPE: {
            IPipelineEnvironment.UAT: "https://formspipe-uat.ipipeline.com/?GAID=2717",
            IPipelineEnvironment.PRODUCTION: "https://formspipe.ipipeline.com/?GAID=2717",
        },
        IPipelineProduct.XRAE: {
            IPipelineEnvironment.UAT: "https://xrae-uat.ipipeline.com/RSAGateway?gaid=2717",
            IPipelineEnvironment.PRODUCTION: "https://xrae.ipipeline.com/RSAGateway?gaid=2717",
        },
        IPipelineProduct.PRODUCTINFO: {
            IPipelineEnvironment.UAT: "https://prodinfo-uat.ipipeline.com/productlist?GAID=2717",
            IPipelineEnvironment.PRODUCTION: "https://prodinfo.ipipeline.com/productlist?GAID=2717",
        },
    },
}

# Order of the iGo profile <Data> elements.
_PROFILE_FIELDS = (
    ("FirstName", "first_name"),
    ("LastName", "last_name"),
    ("MiddleName", "middle_name"),
    ("Email", "email"),
    ("Phone", "phone"),
    ("Phone2", "phone2"),
    ("Fax", "fax"),
    ("Address1", "address1"),
    ("Address2", "address2"),
    ("City", "city"),
    ("State", "state"),
    ("ZipCode", "zip_code"),
    ("Country", "country"),
    ("BrokerDealerNum", "broker_dealer_num"),
)


def _q(prefix: str, local: str) -> str:
    return f"{{{_SAML_NS[prefix]}}}{local}"


def _saml_time(moment: datetime) -> str:
    """UTC instant as 2024-01-01T12:00:00.000Z."""
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def canonicalize(element: ET.Element) -> bytes:
    """Canonical UTF-8 bytes of ``element`` and its subtree."""
    return ET.canonicalize(ET.tostring(element, encoding="unicode")).encode("utf-8")


# ═════════════════════════════════════════════════════════════════════════════
# Request / response models
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SSOAssertionRequest:
    user_id: str
    product: IPipelineProduct
    first_name: str | None = None
    last_name: str | None = None
    middle_name: str | None = None
    email: str | None = None
    phone: str | None = None
    phone2: str | None = None
    fax: str | None = None
    address1: str | None = None
    address2: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    country: str | None = None
    broker_dealer_num: str | None = None

    @classmethod
    def from_dict(cls, payload: Any) -> "SSOAssertionRequest":
        """Build from the SSO route's JSON body.

        Raises:
            ValidationError: missing userId / firstName / lastName / email,
                or an unknown product.
        """
        if not isinstance(payload, dict):
            raise ValidationError("SSO request body must be a JSON object")

        missing = [f for f in ("userId", "firstName", "lastName", "email") if not payload.get(f)]
        if missing:
            raise ValidationError(
                "Missing required fields: userId, firstName, lastName, email",
                details={f: "is required" for f in missing},
            )
        try:
            product = IPipelineProduct(payload.get("product") or IPipelineProduct.IGO.value)
        except ValueError:
            raise ValidationError(
                f"Invalid product. Must be one of: {', '.join(p.value for p in IPipelineProduct)}",
                details={"product": "is invalid"},
            ) from None

        def text(key: str) -> str | None:
            value = payload.get(key)
            return str(value) if value not in (None, "") else None

        return cls(
            user_id=str(payload["userId"]),
            product=product,
            first_name=text("firstName"),
            last_name=text("lastName"),
            middle_name=text("middleName"),
            email=text("email"),
            phone=text("phone"),
            phone2=text("phone2"),
            fax=text("fax"),
            address1=text("address1"),
            address2=text("address2"),
            city=text("city"),
            state=text("state"),
            zip_code=text("zipCode"),
            country=text("country"),
            broker_dealer_num=text("brokerDealerNum"),
        )


@dataclass(frozen=True)
class SignedAssertion:
    saml_response: str
    relay_state: str
    acs_url: str


# ═════════════════════════════════════════════════════════════════════════════
# Service
# ═════════════════════════════════════════════════════════════════════════════

class SAMLAssertionService:
    """Signs SAML 2.0 Responses for iPipeline SSO.

    Args:
        settings: Signing material, IdP entity id and target environment.
        clock:    Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        settings: SAMLSettings,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.settings = settings
        self._clock = clock
        self._key: rsa.RSAPrivateKey | None = None
        self._cert: x509.Certificate | None = None

    # ── Configuration ────────────────────────────────────────────────────────

    def is_configured(self) -> bool:
        return bool(self.settings.private_key and self.settings.certificate)

    @property
    def environment(self) -> IPipelineEnvironment:
        return IPipelineEnvironment(self.settings.environment)

    def get_acs_url(self) -> str:
        return IPIPELINE_ENDPOINTS["acs"][self.environment]

    def get_relay_state(self, product: IPipelineProduct) -> str:
        return IPIPELINE_ENDPOINTS["products"][IPipelineProduct(product)][self.environment]

    def get_sp_entity_id(self) -> str:
        return IPIPELINE_ENDPOINTS["sp_entity_id"][self.environment]

    def _load_signing_material(self) -> tuple[rsa.RSAPrivateKey, x509.Certificate]:
        if not self.is_configured():
            raise ConfigurationError(
                "SAML signing keys not configured - cannot generate secure SSO response"
            )
        if self._key is None or self._cert is None:
            try:
                key = serialization.load_pem_private_key(
                    self.settings.private_key.encode("utf-8"), password=None
                )
                cert = x509.load_pem_x509_certificate(self.settings.certificate.encode("utf-8"))
            except (ValueError, TypeError) as exc:
                raise ConfigurationError(f"Unable to load SAML signing material: {exc}") from exc
            if not isinstance(key, rsa.RSAPrivateKey):
                raise ConfigurationError("SAML signing key must be an RSA private key")
            self._key, self._cert = key, cert
        return self._key, self._cert

    def _certificate_b64(self) -> str:
        _, cert = self._load_signing_material()
        return base64.b64encode(cert.public_bytes(serialization.Encoding.DER)).decode("ascii")

    # ── Document construction ────────────────────────────────────────────────

    @staticmethod
    def build_application_data(request: SSOAssertionRequest) -> str:
        """iGo profile XML carried as the text of the ApplicationData attribute."""
        root = ET.Element("iGoApplicationData")
        user_data = ET.SubElement(root, "UserData")
        ET.SubElement(user_data, "Data", Name="UpdateUserProfile").text = "TRUE"
        for name, attr in _PROFILE_FIELDS:
            ET.SubElement(user_data, "Data", Name=name).text = getattr(request, attr) or None
        ET.SubElement(root, "ClientData")
        return ET.tostring(root, encoding="unicode", short_empty_elements=True)

    def _build_response(
        self,
        request: SSOAssertionRequest,
        *,
        response_id: str,
        assertion_id: str,
        now: datetime,
        acs_url: str,
    ) -> ET.Element:
        issue_instant = _saml_time(now)
        not_before = _saml_time(now - VALIDITY_WINDOW)
        not_on_or_after = _saml_time(now + VALIDITY_WINDOW)

        response = ET.Element(_q("samlp", "Response"), {
            "ID": response_id,
            "Version": "2.0",
            "IssueInstant": issue_instant,
            "Destination": acs_url,
        })
        ET.SubElement(response, _q("saml", "Issuer")).text = self.settings.entity_id
        status = ET.SubElement(response, _q("samlp", "Status"))
        ET.SubElement(status, _q("samlp", "StatusCode"), Value=STATUS_SUCCESS)

        assertion = ET.SubElement(response, _q("saml", "Assertion"), {
            "Version": "2.0",
            "ID": assertion_id,
            "IssueInstant": issue_instant,
        })
        ET.SubElement(assertion, _q("saml", "Issuer")).text = self.settings.entity_id

        subject = ET.SubElement(assertion, _q("saml", "Subject"))
        ET.SubElement(subject, _q("saml", "NameID"), Format=NAMEID_UNSPECIFIED).text = request.user_id
        confirmation = ET.SubElement(subject, _q("saml", "SubjectConfirmation"), Method=CM_BEARER)
        ET.SubElement(confirmation, _q("saml", "SubjectConfirmationData"), {
            "NotBefore": not_before,
            "NotOnOrAfter": not_on_or_after,
            "Recipient": acs_url,
        })

        conditions = ET.SubElement(assertion, _q("saml", "Conditions"), {
            "NotBefore": not_before,
            "NotOnOrAfter": not_on_or_after,
        })
        restriction = ET.SubElement(conditions, _q("saml", "AudienceRestriction"))
        ET.SubElement(restriction, _q("saml", "Audience")).text = self.get_sp_entity_id()

        authn = ET.SubElement(assertion, _q("saml", "AuthnStatement"), AuthnInstant=issue_instant)
        context = ET.SubElement(authn, _q("saml", "AuthnContext"))
        ET.SubElement(context, _q("saml", "AuthnContextClassRef")).text = AC_UNSPECIFIED

        statement = ET.SubElement(assertion, _q("saml", "AttributeStatement"))
        attributes = (
            ("CompanyIdentifier", COMPANY_IDENTIFIER),
            ("ChannelName", CHANNEL_NAME),
            ("Action", "CREATE"),
            ("Groups", USER_GROUPS),
            ("TimeoutURL", None),
            ("ApplicationData", self.build_application_data(request)),
        )
        for name, value in attributes:
            attribute = ET.SubElement(
                statement, _q("saml", "Attribute"), Name=name, NameFormat=ATTRNAME_BASIC
            )
            ET.SubElement(attribute, _q("saml", "AttributeValue")).text = value
        return response

    @staticmethod
    def _build_signed_info(reference_id: str, digest_value: str) -> ET.Element:
        signed_info = ET.Element(_q("ds", "SignedInfo"))
        ET.SubElement(signed_info, _q("ds", "CanonicalizationMethod"), Algorithm=ALG_EXC_C14N)
        ET.SubElement(signed_info, _q("ds", "SignatureMethod"), Algorithm=ALG_RSA_SHA256)
        reference = ET.SubElement(signed_info, _q("ds", "Reference"), URI=f"#{reference_id}")
        transforms = ET.SubElement(reference, _q("ds", "Transforms"))
        ET.SubElement(transforms, _q("ds", "Transform"), Algorithm=ALG_ENVELOPED)
        ET.SubElement(transforms, _q("ds", "Transform"), Algorithm=ALG_EXC_C14N)
        ET.SubElement(reference, _q("ds", "DigestMethod"), Algorithm=ALG_SHA256)
        ET.SubElement(reference, _q("ds", "DigestValue")).text = digest_value
        return signed_info

    def _sign(self, response: ET.Element) -> None:
        """Compute the enveloped signature and insert it after the Issuer."""
        key, _ = self._load_signing_material()

        digest = base64.b64encode(hashlib.sha256(canonicalize(response)).digest()).decode("ascii")
        signed_info = self._build_signed_info(response.get("ID"), digest)
        signature_value = key.sign(canonicalize(signed_info), padding.PKCS1v15(), hashes.SHA256())

        signature = ET.Element(_q("ds", "Signature"))
        signature.append(signed_info)
        ET.SubElement(signature, _q("ds", "SignatureValue")).text = (
            base64.b64encode(signature_value).decode("ascii")
        )
        key_info = ET.SubElement(signature, _q("ds", "KeyInfo"))
        x509_data = ET.SubElement(key_info, _q("ds", "X509Data"))
        ET.SubElement(x509_data, _q("ds", "X509Certificate")).text = self._certificate_b64()

        issuer = response.find("saml:Issuer", _SAML_NS)
        response.insert(list(response).index(issuer) + 1, signature)

    # ── Public API ───────────────────────────────────────────────────────────

    def generate_assertion(self, request: SSOAssertionRequest) -> SignedAssertion:
        """Produce a signed, base64-encoded SAML Response for ``request.product``.

        Raises:
            ConfigurationError: signing key / certificate missing or unusable.
        """
        self._load_signing_material()

        now = self._clock()
        acs_url = self.get_acs_url()
        relay_state = self.get_relay_state(request.product)
        response_id = f"_{uuid.uuid4()}"

        response = self._build_response(
            request,
            response_id=response_id,
            assertion_id=f"_{uuid.uuid4()}",
            now=now,
            acs_url=acs_url,
        )
        self._sign(response)

        document = ET.tostring(response, encoding="utf-8", xml_declaration=True)
        logger.info(
            "Generated iPipeline SAML response id=%s user=%s product=%s env=%s",
            response_id, request.user_id, request.product.value, self.environment.value,
            extra={"event_type": "saml_assertion", "partner": "iPipeline"},
        )
        return SignedAssertion(
            saml_response=base64.b64encode(document).decode("ascii"),
            relay_state=relay_state,
            acs_url=acs_url,
        )

    def generate_idp_metadata(self) -> str:
        """IdP metadata XML to hand to iPipeline when registering the federation."""
        public_url = self.settings.public_url.rstrip("/")

        root = ET.Element(_q("md", "EntityDescriptor"), entityID=self.settings.entity_id)
        idp = ET.SubElement(
            root, _q("md", "IDPSSODescriptor"),
            protocolSupportEnumeration="urn:oasis:names:tc:SAML:2.0:protocol",
        )
        key_descriptor = ET.SubElement(idp, _q("md", "KeyDescriptor"), use="signing")
        key_info = ET.SubElement(key_descriptor, _q("ds", "KeyInfo"))
        x509_data = ET.SubElement(key_info, _q("ds", "X509Data"))
        ET.SubElement(x509_data, _q("ds", "X509Certificate")).text = self._certificate_b64()
        ET.SubElement(
            idp, _q("md", "SingleSignOnService"),
            Binding=BINDING_HTTP_POST,
            Location=f"{public_url}/api/v1/integrations/ipipeline/sso",
        )

        organization = ET.SubElement(root, _q("md", "Organization"))
        for tag, text in (
            ("OrganizationName", "Valor Insurance"),
            ("OrganizationDisplayName", "Valor Financial Specialists"),
            ("OrganizationURL", public_url),
        ):
            ET.SubElement(organization, _q("md", tag), {_XML_LANG: "en"}).text = text

        contact = ET.SubElement(root, _q("md", "ContactPerson"), contactType="technical")
        ET.SubElement(contact, _q("md", "Company")).text = "Valor Financial Specialists"
        ET.SubElement(contact, _q("md", "EmailAddress")).text = "support@valorinsurance.com"

        return ET.tostring(root, encoding="utf-8", xml_declaration=True).decode("utf-8")
