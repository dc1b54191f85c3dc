from __future__ import annotations

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Optional, TypeVar

from .errors import LedgerQueryFailed
from .pricing import ExchangeRate
from .xrpl import DROPS_PER_XRP, LedgerClient, to_currency_code

T = TypeVar("T")


@dataclass(frozen=True)
class WalletBalance:
    """XRP balance of a wallet with an informational quote-currency value."""

    address: str
    balance_drops: int
    balance_xrp: Decimal
    balance_rlusd: Optional[float] = None


@dataclass(frozen=True)
class Eligibility:
    has_trustline: bool
    xrp_balance: Decimal
    token_balance: Decimal
    can_donate: bool


async def _labelled(query: str, call: Awaitable[T]) -> T:
    try:
        return await call
    except LedgerQueryFailed as exc:
        raise LedgerQueryFailed(query, f"{exc.query} {exc.reason}".strip()) from exc


async def has_trustline(ledger: LedgerClient, address: str, token_code: str, issuer: str) -> bool:
    currency = to_currency_code(token_code)
    lines = await ledger.get_account_lines(address, peer=issuer)
    return any(
        line.get("currency") == currency and line.get("account") == issuer for line in lines
    )


async def check_eligibility(
    ledger: LedgerClient, address: str, token_code: str, issuer_address: str
) -> Eligibility:
    """Decide whether ``address`` can currently donate to a project token.

    The three reads run concurrently. Any failed read raises
    :class:`LedgerQueryFailed` naming it; a failed read is never reported as
    ``can_donate=False``.
    """

    trustline, xrp_balance, token_balance = await asyncio.gather(
        _labelled("trustline", has_trustline(ledger, address, token_code, issuer_address)),
        _labelled("xrp_balance", ledger.get_account_balance(address)),
        _labelled(
            "token_balance", ledger.get_token_balance(address, token_code, issuer_address)
        ),
    )
    return Eligibility(
        has_trustline=trustline,
        xrp_balance=xrp_balance,
        token_balance=token_balance,
        can_donate=trustline and xrp_balance > 0,
    )


async def get_wallet_balance(
    ledger: LedgerClient, address: str, rate: Optional[ExchangeRate] = None
) -> WalletBalance:
    xrp = await ledger.get_account_balance(address)
    return WalletBalance(
        address=address,
        balance_drops=int(xrp * DROPS_PER_XRP),
        balance_xrp=xrp,
        balance_rlusd=round(float(xrp) * rate.rate, 2) if rate is not None else None,
    )
