from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .config import TBL_DONATION_RECORDS, TBL_PROJECTS
from .database import Store
from .errors import InvalidInput, NotFound
from .pricing import (
    DEFAULT_PRICING,
    ExchangeRate,
    PricingParameters,
    RateCache,
    TokenPrice,
    calculate_price,
    validate_pricing_inputs,
)
from .utils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Project:
    id: str
    name: str
    token_code: str
    issuer_address: str
    quality_score: Optional[float] = None


@dataclass(frozen=True)
class PriceQuote:
    project_id: str
    price: TokenPrice
    rate: ExchangeRate
    quality_score: float
    total_donations_xrp: float


def project_from_record(record: Dict[str, Any]) -> Project:
    token_code = record.get("token_code")
    issuer_address = record.get("issuer_address")
    if not token_code or not issuer_address:
        raise InvalidInput(f"Project {record.get('id')} has no token configured")
    quality = record.get("quality_score")
    return Project(
        id=record["id"],
        name=record.get("name", ""),
        token_code=token_code,
        issuer_address=issuer_address,
        quality_score=float(quality) if quality is not None else None,
    )


class ProjectDirectory:
    """Project lookups and price quotes."""

    def __init__(
        self,
        store: Store,
        rate_cache: RateCache,
        *,
        params: PricingParameters = DEFAULT_PRICING,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.rate_cache = rate_cache
        self.params = params
        self.clock = clock

    async def get_project(self, project_id: str) -> Project:
        if not project_id:
            raise InvalidInput("project_id is required")
        record = await self.store.get(TBL_PROJECTS, project_id)
        if record is None:
            raise NotFound(f"Project not found: {project_id}")
        return project_from_record(record)

    async def total_donations_xrp(self, project_id: str) -> float:
        records = await self.store.query(TBL_DONATION_RECORDS, "project_id", project_id)
        return float(sum(float(r.get("amount", 0)) for r in records))

    async def quote(self, project: Project) -> PriceQuote:
        if project.quality_score is None:
            raise InvalidInput("Quality score not found. Please update quality score first.")

        total = await self.total_donations_xrp(project.id)
        rate = await self.rate_cache.get_rate()
        now = self.clock()
        validate_pricing_inputs(project.quality_score, total, self.params, rate, now=now)
        price = calculate_price(project.quality_score, total, self.params, rate, now=now)
        logger.debug(
            "Priced %s: quality=%s total=%s rate=%s -> %s",
            project.id,
            project.quality_score,
            total,
            rate.rate,
            price,
        )
        return PriceQuote(
            project_id=project.id,
            price=price,
            rate=rate,
            quality_score=project.quality_score,
            total_donations_xrp=total,
        )

    async def get_current_price(self, project_id: str) -> PriceQuote:
        return await self.quote(await self.get_project(project_id))
