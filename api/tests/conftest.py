import asyncio
import copy
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT / "api"))

# Ensure required environment variables are populated before importing the code under test.
os.environ.setdefault("SUPABASE_URL", "https://example.supabase.co")
os.environ.setdefault("SUPABASE_KEY", "public-anon-key")
os.environ.setdefault("JWT_SECRET", "unit-test-secret-0123456789abcdef0123")
os.environ.setdefault("XRPL_RPC_URL", "https://xrpl.invalid")
os.environ.setdefault("XRPL_NETWORK", "TESTNET")
os.environ.setdefault("XAMAN_API_KEY", "test-key")
os.environ.setdefault("XAMAN_API_SECRET", "test-secret")

from xrpl_donations.core.errors import LedgerQueryFailed, NotFound, ProviderUnavailable  # noqa: E402
from xrpl_donations.core.pricing import ExchangeRate, RateCache  # noqa: E402
from xrpl_donations.core.services import build_services  # noqa: E402
from xrpl_donations.core.xaman import CreatedPayload, Pending  # noqa: E402
from xrpl_donations.core.xrpl import (  # noqa: E402
    LedgerTransaction,
    SubmitResult,
    memo_json,
    to_currency_code,
    xrp_to_drops,
)

TREASURY = "rPT1Sjq2YGrBMTttX4GZHjKu9dyfzbpAYe"
ISSUER = "rf1BiGeXwwQoi8Z2ueFYTEXSwuJYfV2Jpn"
DONOR = "rN7n7otQDd6FczFgLdSqtcsAUxDkw6fzRH"
GENESIS = "rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh"
START = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def run(coro):
    return asyncio.run(coro)


class Clock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class MemoryStore:
    """In-memory stand-in for the Supabase document store.

    ``fail_puts`` makes the next put into each named collection raise, and
    ``yielding`` hands control back to the event loop before every operation
    so concurrent callers interleave.
    """

    def __init__(self):
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.writes: List[tuple] = []
        self.fail_puts: set = set()
        self.yielding = False

    def _table(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self.collections.setdefault(collection, {})

    async def _pause(self) -> None:
        if self.yielding:
            await asyncio.sleep(0)

    async def get(self, collection, doc_id):
        await self._pause()
        doc = self._table(collection).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def put(self, collection, doc_id, doc):
        await self._pause()
        if collection in self.fail_puts:
            self.fail_puts.discard(collection)
            raise ConnectionError(f"{collection} write failed")
        row = {**copy.deepcopy(doc), "id": doc_id}
        self._table(collection)[doc_id] = row
        self.writes.append(("put", collection, doc_id))
        return copy.deepcopy(row)

    async def update_merge(self, collection, doc_id, partial):
        await self._pause()
        row = self._table(collection).get(doc_id)
        if row is None:
            return None
        row.update(copy.deepcopy(partial))
        self.writes.append(("update", collection, doc_id))
        return copy.deepcopy(row)

    async def update_if(self, collection, doc_id, partial, *, field, allowed):
        await self._pause()
        row = self._table(collection).get(doc_id)
        if row is None or row.get(field) not in list(allowed):
            return False
        row.update(copy.deepcopy(partial))
        self.writes.append(("update_if", collection, doc_id))
        return True

    async def query(self, collection, field, value):
        await self._pause()
        return [
            copy.deepcopy(row) for row in self._table(collection).values() if row.get(field) == value
        ]

    def rows(self, collection: str) -> List[Dict[str, Any]]:
        return list(self._table(collection).values())


class FakeLedger:
    def __init__(self):
        self.lines: Dict[str, List[Dict[str, Any]]] = {}
        self.balances: Dict[str, Decimal] = {}
        self.token_balances: Dict[str, Decimal] = {}
        self.book_rate = Decimal("2")
        self.failing: set = set()
        self.transactions: Dict[str, LedgerTransaction] = {}
        self.submitted: List[Any] = []
        self.submit_result = SubmitResult(
            hash="C" * 64, sequence=7, result_code="tesSUCCESS", validated=True
        )

    def _check(self, query: str) -> None:
        if query in self.failing:
            raise LedgerQueryFailed(query, "boom")

    async def get_account_lines(self, address, *, peer=None):
        self._check("account_lines")
        return list(self.lines.get(address, []))

    async def get_account_balance(self, address):
        self._check("account_info")
        return self.balances.get(address, Decimal("0"))

    async def get_token_balance(self, address, token_code, issuer):
        self._check("token_balance")
        return self.token_balances.get(address, Decimal("0"))

    async def get_order_book(self, base, quote):
        self._check("book_offers")
        return self.book_rate

    async def submit_transaction(self, tx, wallet):
        self._check("submit")
        self.submitted.append(tx)
        return self.submit_result

    async def get_transaction_status(self, tx_hash):
        self._check("tx")
        return self.transactions.get(tx_hash)

    def add_trustline(self, address: str, token_code: str, issuer: str) -> None:
        self.lines.setdefault(address, []).append(
            {"account": issuer, "currency": to_currency_code(token_code), "balance": "0"}
        )

    def add_payment(self, tx_hash: str, request: Dict[str, Any], *, account: str = DONOR, **overrides):
        drops = str(xrp_to_drops(request["amount"]))
        tx = {
            "TransactionType": "Payment",
            "Account": account,
            "Destination": request["destination"],
            "DestinationTag": request["destination_tag"],
            "Amount": drops,
            "Memos": [memo_json("donation_verification", request["verification_hash"])],
        }
        tx.update(overrides)
        self.transactions[tx_hash] = LedgerTransaction(
            hash=tx_hash,
            validated=True,
            tx=tx,
            meta={"TransactionResult": "tesSUCCESS", "delivered_amount": tx["Amount"]},
        )


class FakeProvider:
    def __init__(self):
        self.created: List[Dict[str, Any]] = []
        self.statuses: Dict[str, Any] = {}
        self.status_calls: List[str] = []
        self.stream: List[Any] = []
        self.fail_create = False
        self.fail_status = False

    async def create_payload(self, body):
        if self.fail_create:
            raise ProviderUnavailable("Xaman API error: 503")
        self.created.append(body)
        uuid = f"payload-{len(self.created)}"
        return CreatedPayload(
            uuid=uuid,
            qr_png=f"https://xumm.app/sign/{uuid}_q.png",
            qr_uri=f"https://xumm.app/sign/{uuid}",
            websocket_url=f"wss://xumm.app/sign/{uuid}",
        )

    async def get_payload_status(self, uuid):
        self.status_calls.append(uuid)
        if self.fail_status:
            raise ProviderUnavailable("Xaman API request timed out")
        known = {f"payload-{i}" for i in range(1, len(self.created) + 1)}
        if uuid not in self.statuses and uuid not in known:
            raise NotFound("Xaman payload not found")
        return self.statuses.get(uuid, Pending(uuid=uuid))

    async def stream_events(self, payload_id, websocket_url):
        for event in self.stream:
            yield event


@dataclass
class Harness:
    clock: Clock
    store: MemoryStore
    ledger: FakeLedger
    provider: FakeProvider
    services: Any
    fetches: List[ExchangeRate]


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def provider():
    return FakeProvider()


def make_harness(clock, store, ledger, provider, *, issuer_wallet=None, verify_transactions=True, rate=2.0):
    fetches: List[ExchangeRate] = []

    async def fetch() -> ExchangeRate:
        value = ExchangeRate(rate=rate, timestamp=clock(), source="test")
        fetches.append(value)
        return value

    services = build_services(
        store,
        ledger,
        provider,
        rate_cache=RateCache(fetch, ttl=timedelta(minutes=5), clock=clock),
        issuer_wallet=issuer_wallet,
        treasury_address=TREASURY,
        clock=clock,
        verify_transactions=verify_transactions,
    )
    return Harness(clock, store, ledger, provider, services, fetches)


@pytest.fixture
def harness(clock, store, ledger, provider):
    return make_harness(clock, store, ledger, provider)


def seed_project(store: MemoryStore, project_id: str = "proj-1", *, quality: Optional[float] = 0.5, issuer: str = ISSUER):
    return run(
        store.put(
            "projects",
            project_id,
            {"name": "Clean Water", "token_code": "WATER", "issuer_address": issuer, "quality_score": quality},
        )
    )
