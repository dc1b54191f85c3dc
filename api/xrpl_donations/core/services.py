"""Process-wide service graph, built once in the app lifespan."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import httpx
from fastapi import Request
from xrpl.wallet import Wallet

from .config import (
    RATE_CACHE_TTL_S,
    XAMAN_TIMEOUT_S,
    XRPL_ISSUER_SEED,
    XRPL_TREASURY_ADDRESS,
)
from .database import Store, create_store
from .donations import DonationEngine
from .payloads import PayloadCoordinator
from .pricing import RateCache, order_book_rate_fetcher
from .projects import ProjectDirectory
from .trustlines import TrustlineService
from .utils import utcnow
from .xaman import XamanClient
from .xrpl import LedgerClient

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: Store
    ledger: LedgerClient
    provider: XamanClient
    rate_cache: RateCache
    projects: ProjectDirectory
    coordinator: PayloadCoordinator
    donations: DonationEngine
    trustlines: TrustlineService
    http: Optional[httpx.AsyncClient] = None

    async def aclose(self) -> None:
        if self.http is not None:
            await self.http.aclose()


def build_services(
    store: Store,
    ledger: LedgerClient,
    provider: XamanClient,
    *,
    rate_cache: Optional[RateCache] = None,
    issuer_wallet: Optional[Wallet] = None,
    treasury_address: str = XRPL_TREASURY_ADDRESS,
    http: Optional[httpx.AsyncClient] = None,
    clock: Callable[[], datetime] = utcnow,
    **engine_options,
) -> Services:
    if rate_cache is None:
        rate_cache = RateCache(
            order_book_rate_fetcher(ledger, clock=clock),
            ttl=timedelta(seconds=RATE_CACHE_TTL_S),
            clock=clock,
        )
    projects = ProjectDirectory(store, rate_cache, clock=clock)
    coordinator = PayloadCoordinator(store, provider, clock=clock)
    donations = DonationEngine(
        store,
        ledger,
        coordinator,
        projects,
        treasury_address=treasury_address,
        issuer_wallet=issuer_wallet,
        clock=clock,
        **engine_options,
    )
    trustlines = TrustlineService(store, ledger, coordinator, projects, clock=clock)
    return Services(
        store=store,
        ledger=ledger,
        provider=provider,
        rate_cache=rate_cache,
        projects=projects,
        coordinator=coordinator,
        donations=donations,
        trustlines=trustlines,
        http=http,
    )


async def create_services() -> Services:
    http = httpx.AsyncClient(timeout=XAMAN_TIMEOUT_S)
    issuer_wallet = Wallet.from_seed(XRPL_ISSUER_SEED) if XRPL_ISSUER_SEED else None
    if issuer_wallet is None:
        logger.info("XRPL_ISSUER_SEED not set; reward checks are disabled")
    if not XRPL_TREASURY_ADDRESS:
        logger.warning("XRPL_TREASURY_ADDRESS not set; donations will be refused")
    return build_services(
        await create_store(),
        LedgerClient(),
        XamanClient(http=http),
        issuer_wallet=issuer_wallet,
        http=http,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
