"""Dynamic token pricing.

Price in the quote currency (RLUSD)::

    P = P0 + alpha * Q + beta * ln(1 + F / F0)

where ``Q`` is the project's quality score in [0, 1] and ``F`` its cumulative
donations converted from XRP with the supplied rate. The XRP price is
``P / rate``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional

from .config import (
    PRICING_BASE_PRICE,
    PRICING_DONATION_COEFFICIENT,
    PRICING_QUALITY_COEFFICIENT,
    PRICING_REFERENCE_DONATION,
    RATE_CACHE_TTL_S,
    RATE_MAX_AGE_S,
    RLUSD_CURRENCY,
    RLUSD_ISSUER,
)
from .errors import InvalidInput, InvalidRate, LedgerQueryFailed, RateUnavailable
from .utils import utcnow
from .xrpl import LedgerClient, issued_currency, xrp_currency

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class PricingParameters:
    base_price: float
    quality_coefficient: float
    donation_coefficient: float
    reference_donation: float


DEFAULT_PRICING = PricingParameters(
    base_price=PRICING_BASE_PRICE,
    quality_coefficient=PRICING_QUALITY_COEFFICIENT,
    donation_coefficient=PRICING_DONATION_COEFFICIENT,
    reference_donation=PRICING_REFERENCE_DONATION,
)


@dataclass(frozen=True)
class ExchangeRate:
    """Quote-currency units per XRP."""

    rate: float
    timestamp: datetime
    source: str


@dataclass(frozen=True)
class TokenPrice:
    rlusd: float
    xrp: float
    timestamp: datetime


def calculate_rlusd_price(
    quality_score: float,
    total_donations_xrp: float,
    params: PricingParameters,
    rate: float,
) -> float:
    # Historical volume is converted at the current rate, not the rate at
    # donation time. Downstream consumers rely on this; keep it until the
    # pricing model is revised.
    total_donations_rlusd = total_donations_xrp * rate

    quality_term = params.quality_coefficient * quality_score
    donation_term = params.donation_coefficient * math.log(
        1 + total_donations_rlusd / params.reference_donation
    )
    price = params.base_price + quality_term + donation_term
    return round(max(price, params.base_price), 4)


def convert_rlusd_price_to_xrp(rlusd_price: float, rate: float) -> float:
    if rate <= 0:
        raise InvalidRate()
    return round(rlusd_price / rate, 6)


def calculate_price(
    quality_score: float,
    total_donations_xrp: float,
    params: PricingParameters,
    rate: ExchangeRate,
    *,
    now: Optional[datetime] = None,
) -> TokenPrice:
    if rate.rate <= 0:
        raise InvalidRate()
    rlusd = calculate_rlusd_price(quality_score, total_donations_xrp, params, rate.rate)
    return TokenPrice(
        rlusd=rlusd,
        xrp=convert_rlusd_price_to_xrp(rlusd, rate.rate),
        timestamp=now or utcnow(),
    )


def validate_pricing_inputs(
    quality_score: float,
    total_donations_xrp: float,
    params: PricingParameters,
    rate: ExchangeRate,
    *,
    now: Optional[datetime] = None,
    max_age: timedelta = timedelta(seconds=RATE_MAX_AGE_S),
) -> None:
    """Raise :class:`InvalidInput` listing every rule the inputs break."""
    errors: List[str] = []
    if not 0 <= quality_score <= 1:
        errors.append("Quality score must be between 0 and 1")
    if total_donations_xrp < 0:
        errors.append("Total donations must be non-negative")
    if params.base_price <= 0:
        errors.append("Base price must be positive")
    if params.reference_donation <= 0:
        errors.append("Reference donation must be positive")
    if rate.rate <= 0:
        errors.append("Exchange rate must be positive")
    if rate.timestamp < (now or utcnow()) - max_age:
        errors.append("Exchange rate is too old")
    if errors:
        raise InvalidInput("; ".join(errors))


def is_rate_valid(
    rate: ExchangeRate,
    *,
    now: Optional[datetime] = None,
    max_age: timedelta = timedelta(seconds=RATE_MAX_AGE_S),
) -> bool:
    return rate.rate > 0 and (now or utcnow()) - rate.timestamp <= max_age


def convert_xrp_to_rlusd(xrp_amount: float, rate: ExchangeRate) -> float:
    if xrp_amount < 0:
        raise InvalidInput("XRP amount must be non-negative")
    if rate.rate <= 0:
        raise InvalidRate()
    return xrp_amount * rate.rate


def convert_rlusd_to_xrp(rlusd_amount: float, rate: ExchangeRate) -> float:
    if rlusd_amount < 0:
        raise InvalidInput("RLUSD amount must be non-negative")
    if rate.rate <= 0:
        raise InvalidRate()
    return rlusd_amount / rate.rate


class RateCache:
    """Single-slot exchange rate cache.

    The slot is valid for ``ttl`` from the moment it was fetched. A miss calls
    ``fetch`` once; concurrent misses may each fetch, which is harmless.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[ExchangeRate]],
        *,
        ttl: timedelta = timedelta(seconds=RATE_CACHE_TTL_S),
        clock: Clock = utcnow,
    ):
        self._fetch = fetch
        self.ttl = ttl
        self.clock = clock
        self._value: Optional[ExchangeRate] = None
        self._fetched_at: Optional[datetime] = None

    def get(self) -> Optional[ExchangeRate]:
        if self._value is None or self._fetched_at is None:
            return None
        if self.clock() - self._fetched_at >= self.ttl:
            self.clear()
            return None
        return self._value

    def set(self, rate: ExchangeRate) -> None:
        self._value = rate
        self._fetched_at = self.clock()

    def clear(self) -> None:
        self._value = None
        self._fetched_at = None

    async def get_rate(self) -> ExchangeRate:
        cached = self.get()
        if cached is not None:
            return cached
        try:
            fresh = await self._fetch()
        except (LedgerQueryFailed, InvalidInput) as exc:
            raise RateUnavailable(f"Exchange rate unavailable: {exc}") from exc
        if fresh.rate <= 0:
            raise RateUnavailable("Exchange rate source returned a non-positive rate")
        self.set(fresh)
        logger.debug("Refreshed exchange rate %s from %s", fresh.rate, fresh.source)
        return fresh


def order_book_rate_fetcher(
    ledger: LedgerClient,
    *,
    currency: str = RLUSD_CURRENCY,
    issuer: str = RLUSD_ISSUER,
    clock: Clock = utcnow,
) -> Callable[[], Awaitable[ExchangeRate]]:
    """Fetcher reading the best XRP -> quote currency offer from the DEX."""

    async def fetch() -> ExchangeRate:
        rate = await ledger.get_order_book(xrp_currency(), issued_currency(currency, issuer))
        return ExchangeRate(rate=float(rate), timestamp=clock(), source="xrpl-dex")

    return fetch
