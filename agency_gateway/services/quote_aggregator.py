"""
Quote Aggregator — one quote request, many partners, one ranked answer.

Fans a UnifiedQuoteRequest out to every applicable partner concurrently,
normalises each partner's quote shape into UnifiedQuote, then filters,
ranks and summarises the merged list.

Partial failure is normal operation: a partner that raises or answers
``success: false`` becomes a failed ProviderStatus entry and the remaining
quotes are still returned. The aggregator itself only raises
ValidationError, and only from ``UnifiedQuoteRequest.from_dict``.

Usage:
    from agency_gateway.services.quote_aggregator import QuoteAggregator, UnifiedQuoteRequest

    aggregator = QuoteAggregator.from_gateways(build_gateways(load_partner_configs()))
    result = aggregator.aggregate(UnifiedQuoteRequest.from_dict(payload))
    # -> AggregationResult; result.to_dict() is the JSON contract
"""

from __future__ import annotations

import functools
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable

from agency_gateway.core.exceptions import ValidationError
from agency_gateway.integrations.audit import start_timer
from agency_gateway.integrations.base_gateway import PartnerGateway
from agency_gateway.integrations.ipipeline_gateway import IPipelineQuoteRequest
from agency_gateway.integrations.ratewatch_gateway import AnnuityType, RateWatchQuoteRequest
from agency_gateway.integrations.types import HealthCheckResult
from agency_gateway.integrations.winflex_gateway import WinFlexQuoteRequest

logger = logging.getLogger(__name__)

DEFAULT_RATING_AGENCY = "AM Best"

PRODUCT_TYPES = ("Term", "Whole Life", "Universal Life", "Variable Universal Life", "Annuity")
GENDERS = ("Male", "Female")
TOBACCO_USE = ("Never", "Former", "Current")
HEALTH_CLASSES = ("Preferred Plus", "Preferred", "Standard Plus", "Standard", "Substandard")

ANNUITY_TYPE_MAP = {
    "FIXED": AnnuityType.FIXED,
    "VARIABLE": AnnuityType.VARIABLE,
    "INDEXED": AnnuityType.FIXED_INDEXED,
    "IMMEDIATE": AnnuityType.IMMEDIATE,
    "DEFERRED": AnnuityType.DEFERRED,
    "MYGA": AnnuityType.MYGA,
}


# ═════════════════════════════════════════════════════════════════════════════
# Request model
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ClientInfo:
    first_name: str
    last_name: str
    date_of_birth: date
    gender: str
    state: str
    zip_code: str
    email: str | None = None
    phone: str | None = None


@dataclass(frozen=True)
class HealthInfo:
    tobacco: str
    health_class: str
    height: float | None = None  # inches
    weight: float | None = None  # pounds


@dataclass(frozen=True)
class ProductSelection:
    type: str
    face_amount: float | None = None
    premium: float | None = None
    term: int | None = None
    annuity_type: str | None = None

    @property
    def is_annuity(self) -> bool:
        return self.type == "Annuity"


@dataclass(frozen=True)
class QuoteFilters:
    carriers: tuple[str, ...] = ()
    min_rating: str | None = None
    max_premium: float | None = None


def _number(value: Any, path: str, errors: dict, *, required: bool = False, positive: bool = False):
    if value is None or value == "":
        if required:
            errors[path] = "is required"
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        errors[path] = "must be a number"
        return None
    if positive and value <= 0:
        errors[path] = "must be greater than zero"
        return None
    return value


def _choice(value: Any, path: str, allowed: tuple, errors: dict) -> str | None:
    if not value:
        errors[path] = "is required"
        return None
    if value not in allowed:
        errors[path] = f"must be one of {', '.join(allowed)}"
        return None
    return value


@dataclass(frozen=True)
class UnifiedQuoteRequest:
    client: ClientInfo
    health: HealthInfo
    product: ProductSelection
    filters: QuoteFilters = field(default_factory=QuoteFilters)

    @classmethod
    def from_dict(cls, payload: Any) -> "UnifiedQuoteRequest":
        """Build a request from its JSON form (camelCase keys).

        Raises:
            ValidationError: with a ``details`` map of field path → problem.
        """
        if not isinstance(payload, dict):
            raise ValidationError("Quote request body must be a JSON object")

        errors: dict[str, str] = {}

        def section(key: str) -> dict:
            value = payload.get(key)
            if value is None:
                return {}
            if not isinstance(value, dict):
                errors[key] = "must be an object"
                return {}
            return value

        client_raw = section("clientInfo")
        health_raw = section("healthInfo")
        product_raw = section("product")
        filters_raw = section("filters")

        for name in ("firstName", "lastName", "state", "zipCode"):
            if not client_raw.get(name):
                errors[f"clientInfo.{name}"] = "is required"

        dob = None
        if not client_raw.get("dateOfBirth"):
            errors["clientInfo.dateOfBirth"] = "is required"
        else:
            try:
                dob = date.fromisoformat(str(client_raw["dateOfBirth"])[:10])
            except ValueError:
                errors["clientInfo.dateOfBirth"] = "must be an ISO date (YYYY-MM-DD)"

        gender = _choice(client_raw.get("gender"), "clientInfo.gender", GENDERS, errors)
        tobacco = _choice(health_raw.get("tobacco"), "healthInfo.tobacco", TOBACCO_USE, errors)
        health_class = _choice(
            health_raw.get("healthClass"), "healthInfo.healthClass", HEALTH_CLASSES, errors
        )
        height = _number(health_raw.get("height"), "healthInfo.height", errors, positive=True)
        weight = _number(health_raw.get("weight"), "healthInfo.weight", errors, positive=True)

        product_type = _choice(product_raw.get("type"), "product.type", PRODUCT_TYPES, errors)
        is_annuity = product_type == "Annuity"
        face_amount = _number(
            product_raw.get("faceAmount"), "product.faceAmount", errors,
            required=product_type is not None and not is_annuity, positive=True,
        )
        premium = _number(
            product_raw.get("premium"), "product.premium", errors,
            required=is_annuity, positive=True,
        )
        term = _number(
            product_raw.get("term"), "product.term", errors,
            required=product_type == "Term", positive=True,
        )
        annuity_type = product_raw.get("annuityType")
        if annuity_type is not None and annuity_type not in ANNUITY_TYPE_MAP:
            errors["product.annuityType"] = f"must be one of {', '.join(ANNUITY_TYPE_MAP)}"

        carriers = filters_raw.get("carriers") or []
        if not isinstance(carriers, list) or not all(isinstance(c, str) for c in carriers):
            errors["filters.carriers"] = "must be a list of carrier ids"
            carriers = []
        max_premium = _number(filters_raw.get("maxPremium"), "filters.maxPremium", errors, positive=True)

        if errors:
            raise ValidationError("Invalid quote request", details=errors)

        return cls(
            client=ClientInfo(
                first_name=client_raw["firstName"],
                last_name=client_raw["lastName"],
                date_of_birth=dob,
                gender=gender,
                state=client_raw["state"],
                zip_code=str(client_raw["zipCode"]),
                email=client_raw.get("email"),
                phone=client_raw.get("phone"),
            ),
            health=HealthInfo(tobacco=tobacco, health_class=health_class, height=height, weight=weight),
            product=ProductSelection(
                type=product_type,
                face_amount=face_amount,
                premium=premium,
                term=int(term) if term is not None else None,
                annuity_type=annuity_type,
            ),
            filters=QuoteFilters(
                carriers=tuple(carriers),
                min_rating=filters_raw.get("minRating"),
                max_premium=max_premium,
            ),
        )


def calculate_age(date_of_birth: date, today: date) -> int:
    """Whole years between ``date_of_birth`` and ``today``."""
    age = today.year - date_of_birth.year
    if (today.month, today.day) < (date_of_birth.month, date_of_birth.day):
        age -= 1
    return age


# ═════════════════════════════════════════════════════════════════════════════
# Result model
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class UnifiedQuote:
    id: str
    provider: str
    carrier_id: str | None
    carrier_name: str
    product_id: str | None
    product_name: str
    product_type: str | None
    quote_date: str | None
    expiration_date: str | None
    monthly_premium: float | None = None
    annual_premium: float | None = None
    rate: float | None = None
    face_amount: float | None = None
    term: int | None = None
    guaranteed_years: int | None = None
    carrier_rating: str | None = None
    rating_agency: str | None = None
    features: dict = field(default_factory=dict)
    application_url: str | None = None
    e_app_available: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "provider": self.provider,
            "carrierId": self.carrier_id,
            "carrierName": self.carrier_name,
            "productId": self.product_id,
            "productName": self.product_name,
            "productType": self.product_type,
            "monthlyPremium": self.monthly_premium,
            "annualPremium": self.annual_premium,
            "rate": self.rate,
            "faceAmount": self.face_amount,
            "term": self.term,
            "guaranteedYears": self.guaranteed_years,
            "carrierRating": self.carrier_rating,
            "ratingAgency": self.rating_agency,
            "features": dict(self.features),
            "quoteDate": self.quote_date,
            "expirationDate": self.expiration_date,
            "applicationUrl": self.application_url,
            "eAppAvailable": self.e_app_available,
        }


@dataclass(frozen=True)
class ProviderStatus:
    success: bool
    count: int = 0
    error: str | None = None

    def to_dict(self) -> dict:
        data = {"success": self.success, "count": self.count}
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class AggregationResult:
    quotes: list[UnifiedQuote]
    providers: dict[str, ProviderStatus]
    elapsed_ms: int
    request_id: str
    timestamp: datetime
    best_quote: UnifiedQuote | None = None
    average_premium: float | None = None
    success: bool = True

    @property
    def total_quotes(self) -> int:
        return len(self.quotes)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "quotes": [q.to_dict() for q in self.quotes],
            "providers": {name: status.to_dict() for name, status in self.providers.items()},
            "metadata": {
                "totalQuotes": self.total_quotes,
                "bestQuote": self.best_quote.to_dict() if self.best_quote else None,
                "averagePremium": self.average_premium,
                "requestTime": self.elapsed_ms,
            },
            "requestId": self.request_id,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ProvidersHealth:
    results: dict[str, HealthCheckResult]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        data: dict[str, Any] = {name: r.to_dict() for name, r in self.results.items()}
        data["timestamp"] = self.timestamp.isoformat()
        return data


# ═════════════════════════════════════════════════════════════════════════════
# Normalisers (pure)
# ═════════════════════════════════════════════════════════════════════════════

def normalize_winflex_quote(quote: dict) -> UnifiedQuote:
    return UnifiedQuote(
        id=quote["quoteId"],
        provider="WinFlex",
        carrier_id=quote.get("carrierId"),
        carrier_name=quote.get("carrierName", ""),
        product_id=quote.get("productId"),
        product_name=quote.get("productName", ""),
        product_type=quote.get("productType") or quote.get("productName"),
        monthly_premium=quote.get("monthlyPremium"),
        annual_premium=quote.get("annualPremium"),
        face_amount=quote.get("faceAmount"),
        term=quote.get("term"),
        guaranteed_years=quote.get("guaranteedYears"),
        carrier_rating=(quote.get("ratings") or {}).get("amBest"),
        rating_agency=DEFAULT_RATING_AGENCY,
        features=dict(quote.get("features") or {}),
        quote_date=quote.get("quoteDate"),
        expiration_date=quote.get("expirationDate"),
        e_app_available=False,
    )


def normalize_ipipeline_quote(quote: dict) -> UnifiedQuote:
    carrier_code = quote.get("carrierCode")
    product_type = quote.get("productType")
    return UnifiedQuote(
        id=quote["quoteId"],
        provider="iPipeline",
        carrier_id=carrier_code,
        carrier_name=quote.get("carrierName", ""),
        product_id=f"{carrier_code}-{product_type}",
        product_name=quote.get("productName", ""),
        product_type=product_type,
        monthly_premium=quote.get("monthlyPremium"),
        annual_premium=quote.get("annualPremium"),
        face_amount=quote.get("faceAmount"),
        term=quote.get("term"),
        carrier_rating=quote.get("carrierRating"),
        rating_agency=quote.get("ratingAgency") or DEFAULT_RATING_AGENCY,
        features=dict(quote.get("features") or {}),
        quote_date=quote.get("quoteDate"),
        expiration_date=quote.get("expirationDate"),
        application_url=quote.get("applicationUrl"),
        e_app_available=bool(quote.get("eAppAvailable")),
    )


def normalize_ratewatch_quote(quote: dict) -> UnifiedQuote:
    rate = quote.get("rate")
    if rate is None:
        rate = quote.get("guaranteedRate")
    features = {
        "minimumPremium": quote.get("minimumPremium"),
        "maximumAge": quote.get("maximumAge"),
        "surrenderPeriod": quote.get("surrenderPeriod"),
        **(quote.get("features") or {}),
    }
    return UnifiedQuote(
        id=quote["quoteId"],
        provider="RateWatch",
        carrier_id=quote.get("carrierId") or quote.get("carrierCode"),
        carrier_name=quote.get("carrierName", ""),
        product_id=quote.get("productId"),
        product_name=quote.get("productName", ""),
        product_type=quote.get("annuityType"),
        rate=rate,
        term=quote.get("term"),
        guaranteed_years=quote.get("guaranteedYears") or quote.get("term"),
        carrier_rating=quote.get("carrierRating"),
        rating_agency=DEFAULT_RATING_AGENCY,
        features=features,
        quote_date=quote.get("quoteDate") or quote.get("effectiveDate"),
        expiration_date=quote.get("expirationDate"),
    )


# ═════════════════════════════════════════════════════════════════════════════
# Provider adapters
# ═════════════════════════════════════════════════════════════════════════════

class QuoteProvider:
    """Binds one gateway to the unified request / quote model.

    ``fetch`` returns the partner response dict (``success`` + ``quotes``)
    and may raise; the aggregator turns either outcome into a ProviderStatus.
    """

    key = ""
    normalize: Callable[[dict], UnifiedQuote]

    def __init__(self, gateway: PartnerGateway) -> None:
        self.gateway = gateway

    def applies_to(self, request: UnifiedQuoteRequest) -> bool:
        raise NotImplementedError

    def fetch(self, request: UnifiedQuoteRequest, age: int) -> dict:
        raise NotImplementedError

    def health_check(self) -> HealthCheckResult:
        return self.gateway.health_check()


class WinFlexQuoteProvider(QuoteProvider):
    key = "winFlex"
    normalize = staticmethod(normalize_winflex_quote)

    def applies_to(self, request):
        return not request.product.is_annuity

    def fetch(self, request, age):
        return self.gateway.get_quotes(WinFlexQuoteRequest(
            age=age,
            gender=request.client.gender,
            state=request.client.state,
            tobacco=request.health.tobacco,
            health_class=request.health.health_class,
            product_type=request.product.type,
            face_amount=request.product.face_amount,
            term=request.product.term,
            carriers=request.filters.carriers or None,
        ))


class IPipelineQuoteProvider(QuoteProvider):
    key = "iPipeline"
    normalize = staticmethod(normalize_ipipeline_quote)

    def applies_to(self, request):
        return request.product.type == "Term"

    def fetch(self, request, age):
        return self.gateway.get_term_quotes(IPipelineQuoteRequest(
            age=age,
            gender=request.client.gender,
            state=request.client.state,
            tobacco=request.health.tobacco,
            health_class=request.health.health_class,
            face_amount=request.product.face_amount,
            term=request.product.term,
        ))


class RateWatchQuoteProvider(QuoteProvider):
    key = "rateWatch"
    normalize = staticmethod(normalize_ratewatch_quote)

    def applies_to(self, request):
        return request.product.is_annuity

    def fetch(self, request, age):
        annuity_type = ANNUITY_TYPE_MAP.get(request.product.annuity_type or "", AnnuityType.FIXED)
        return self.gateway.get_quotes(RateWatchQuoteRequest(
            annuity_type=annuity_type,
            premium=request.product.premium,
            state=request.client.state,
            term=request.product.term,
            age=age,
            qualified=True,
        ))


# ═════════════════════════════════════════════════════════════════════════════
# Aggregator
# ═════════════════════════════════════════════════════════════════════════════

def _compare_quotes(a: UnifiedQuote, b: UnifiedQuote) -> int:
    if a.monthly_premium is not None and b.monthly_premium is not None:
        return (a.monthly_premium > b.monthly_premium) - (a.monthly_premium < b.monthly_premium)
    if a.rate is not None and b.rate is not None:
        # Higher annuity rate ranks first.
        return (b.rate > a.rate) - (b.rate < a.rate)
    return 0


def rank_quotes(quotes: list[UnifiedQuote]) -> list[UnifiedQuote]:
    """Stable best-first ordering: cheapest premium, else highest rate."""
    return sorted(quotes, key=functools.cmp_to_key(_compare_quotes))


def apply_filters(quotes: list[UnifiedQuote], filters: QuoteFilters) -> list[UnifiedQuote]:
    result = quotes
    if filters.carriers:
        allowed = set(filters.carriers)
        result = [q for q in result if q.carrier_id in allowed]
    if filters.max_premium:
        result = [
            q for q in result
            if q.monthly_premium is None or q.monthly_premium <= filters.max_premium
        ]
    return result


class QuoteAggregator:
    """Concurrent, fault-isolated fan-out over QuoteProviders.

    Args:
        providers:   Adapters in reporting order. Every provider appears in
                     ``AggregationResult.providers`` even when skipped.
        max_workers: Thread pool size; defaults to one thread per provider.
        today:       Clock for age calculation.
    """

    def __init__(
        self,
        providers: list[QuoteProvider],
        *,
        max_workers: int | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.providers = list(providers)
        self.max_workers = max_workers or max(1, len(self.providers))
        self._today = today

    @classmethod
    def from_gateways(cls, gateways: dict[str, PartnerGateway], **kwargs) -> "QuoteAggregator":
        return cls(
            [
                WinFlexQuoteProvider(gateways["winflex"]),
                IPipelineQuoteProvider(gateways["ipipeline"]),
                RateWatchQuoteProvider(gateways["ratewatch"]),
            ],
            **kwargs,
        )

    def _collect(
        self, provider: QuoteProvider, request: UnifiedQuoteRequest, age: int
    ) -> tuple[ProviderStatus, list[UnifiedQuote]]:
        response = provider.fetch(request, age)
        if not response.get("success"):
            error = response.get("error") or response.get("message") or f"{provider.key} returned no quotes"
            return ProviderStatus(success=False, error=str(error)), []
        quotes = [provider.normalize(q) for q in response.get("quotes") or []]
        return ProviderStatus(success=True, count=len(quotes)), quotes

    def aggregate(self, request: UnifiedQuoteRequest) -> AggregationResult:
        timer = start_timer()
        request_id = f"AGG-{uuid.uuid4().hex}"
        age = calculate_age(request.client.date_of_birth, self._today())

        statuses: dict[str, ProviderStatus] = {}
        merged: list[UnifiedQuote] = []

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="quote-fanout") as pool:
            futures = {
                provider.key: pool.submit(self._collect, provider, request, age)
                for provider in self.providers
                if provider.applies_to(request)
            }

            # Merge in provider order once every task has settled.
            for provider in self.providers:
                future = futures.get(provider.key)
                if future is None:
                    statuses[provider.key] = ProviderStatus(success=False)
                    continue
                try:
                    status, quotes = future.result()
                except Exception as exc:
                    logger.warning(
                        "Quote provider %s failed: %s", provider.key, exc,
                        extra={"partner": provider.key, "request_id": request_id,
                               "error_code": getattr(exc, "code", None)},
                    )
                    status, quotes = ProviderStatus(success=False, error=str(exc)), []
                statuses[provider.key] = status
                merged.extend(quotes)

        ranked = rank_quotes(apply_filters(merged, request.filters))
        premiums = [q.monthly_premium for q in ranked if q.monthly_premium is not None]
        average = round(sum(premiums) / len(premiums), 2) if premiums else None
        elapsed = timer()

        logger.info(
            "Aggregated %d quotes for %s in %dms (%s)",
            len(ranked), request.product.type, elapsed,
            ", ".join(f"{k}={'ok' if s.success else 'skip/fail'}" for k, s in statuses.items()),
            extra={"request_id": request_id, "duration_ms": elapsed},
        )
        return AggregationResult(
            quotes=ranked,
            providers=statuses,
            elapsed_ms=elapsed,
            request_id=request_id,
            timestamp=datetime.now(timezone.utc),
            best_quote=ranked[0] if ranked else None,
            average_premium=average,
        )

    def providers_health(self) -> ProvidersHealth:
        """Health of every provider, probed concurrently."""
        results: dict[str, HealthCheckResult] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="quote-health") as pool:
            futures = {p.key: pool.submit(p.health_check) for p in self.providers}
            for key, future in futures.items():
                try:
                    results[key] = future.result()
                except Exception as exc:
                    logger.exception("Health check for %s raised", key)
                    results[key] = HealthCheckResult(healthy=False, message=str(exc))
        return ProvidersHealth(results=results)
