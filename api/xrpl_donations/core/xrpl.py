"""Async XRPL JSON-RPC helpers used by the pricing, eligibility and settlement code."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, List, Optional, Union

import httpx
from xrpl import XRPLException
from xrpl.asyncio import transaction as xrpl_tx
from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.models.currencies import XRP, Currency, IssuedCurrency
from xrpl.models.requests import AccountInfo, AccountLines, BookOffers, Request, Tx
from xrpl.models.transactions import Memo, Transaction
from xrpl.wallet import Wallet

from .config import XRPL_RPC_URL, XRPL_TIMEOUT_S
from .errors import InvalidInput, LedgerQueryFailed

logger = logging.getLogger(__name__)

DROPS_PER_XRP = Decimal("1000000")
ACCOUNT_NOT_FOUND = "actNotFound"
TX_NOT_FOUND = "txnNotFound"
MAX_LINE_PAGES = 20


@dataclass(frozen=True)
class SubmitResult:
    hash: str
    sequence: Optional[int]
    result_code: Optional[str]
    validated: bool


@dataclass(frozen=True)
class LedgerTransaction:
    hash: str
    validated: bool
    tx: Dict[str, Any] = field(default_factory=dict)
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def result_code(self) -> Optional[str]:
        return self.meta.get("TransactionResult")

    @property
    def delivered_amount(self) -> Any:
        return (
            self.meta.get("delivered_amount")
            or self.tx.get("DeliverMax")
            or self.tx.get("Amount")
        )


def xrp_to_drops(xrp: Union[float, Decimal, str]) -> int:
    value = Decimal(str(xrp))
    if value <= 0:
        raise InvalidInput("XRP amount must be > 0")
    drops = (value * DROPS_PER_XRP).to_integral_value(rounding=ROUND_DOWN)
    return int(drops)


def drops_to_xrp(drops: Union[int, str, Decimal]) -> Decimal:
    drops_value = Decimal(str(drops))
    if drops_value < 0:
        raise InvalidInput("drops must be >= 0")
    return drops_value / DROPS_PER_XRP


def to_currency_code(token_code: str) -> str:
    """Return the ledger currency code for ``token_code``.

    Three printable ASCII characters (other than XRP) are a standard code;
    anything else is hex encoded and right padded to 160 bits.
    """
    if (
        len(token_code) == 3
        and all(0x21 <= ord(ch) <= 0x7E for ch in token_code)
        and token_code.upper() != "XRP"
    ):
        return token_code
    return token_code.encode("utf-8").hex().upper().ljust(40, "0")


def from_currency_code(currency: str) -> str:
    if len(currency) != 40:
        return currency
    trimmed = currency.rstrip("0")
    if len(trimmed) % 2:
        trimmed += "0"
    try:
        return bytes.fromhex(trimmed).decode("utf-8")
    except ValueError:
        return currency


def memo_json(memo_type: str, memo_data: str) -> Dict[str, Dict[str, str]]:
    """Memo entry in transaction JSON form (as sent to the signing provider)."""
    return {
        "Memo": {
            "MemoType": memo_type.encode().hex().upper(),
            "MemoData": memo_data.encode().hex().upper(),
        }
    }


def encode_memos(memos: Optional[Dict[str, str]]) -> Optional[List[Memo]]:
    if not memos:
        return None
    return [
        Memo(memo_type=str(key).encode().hex(), memo_data=str(value).encode().hex())
        for key, value in memos.items()
    ]


def decode_memo_data(entry: Dict[str, Any]) -> Optional[str]:
    memo = entry.get("Memo") or {}
    data = memo.get("MemoData")
    if not data:
        return None
    try:
        return bytes.fromhex(data).decode("utf-8")
    except ValueError:
        return None


def _get_tx_hash_from_result(result: Dict[str, Any]) -> Optional[str]:
    return (
        result.get("hash")
        or result.get("tx_json", {}).get("hash")
        or result.get("transaction", {}).get("hash")
    )


def _amount_value(amount: Any) -> Decimal:
    if isinstance(amount, dict):
        return Decimal(str(amount["value"]))
    return drops_to_xrp(amount)


class LedgerClient:
    """Thin async wrapper over the XRPL JSON-RPC API.

    Every call is bounded by ``timeout_s``; transport errors, timeouts and
    ledger error responses are raised as :class:`LedgerQueryFailed`.
    """

    def __init__(
        self,
        url: str = XRPL_RPC_URL,
        *,
        timeout_s: float = XRPL_TIMEOUT_S,
        client: Optional[AsyncJsonRpcClient] = None,
    ):
        self.client = client or AsyncJsonRpcClient(url)
        self.timeout_s = timeout_s

    async def _request(
        self, query: str, request: Request, *, tolerated: tuple = ()
    ) -> Dict[str, Any]:
        try:
            response = await asyncio.wait_for(self.client.request(request), self.timeout_s)
        except asyncio.TimeoutError as exc:
            raise LedgerQueryFailed(query, "timed out") from exc
        except (httpx.HTTPError, XRPLException, OSError) as exc:
            raise LedgerQueryFailed(query, str(exc)) from exc

        result = getattr(response, "result", response)
        if response.is_successful():
            return result
        error = result.get("error")
        if error in tolerated:
            return result
        raise LedgerQueryFailed(query, str(result.get("error_message") or error))

    async def get_account_lines(
        self, address: str, *, peer: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        lines: List[Dict[str, Any]] = []
        marker = None
        for _ in range(MAX_LINE_PAGES):
            request = AccountLines(
                account=address, peer=peer, ledger_index="validated", marker=marker
            )
            result = await self._request("account_lines", request, tolerated=(ACCOUNT_NOT_FOUND,))
            if result.get("error") == ACCOUNT_NOT_FOUND:
                return []
            lines.extend(result.get("lines", []))
            marker = result.get("marker")
            if not marker:
                break
        return lines

    async def get_account_balance(self, address: str) -> Decimal:
        """XRP balance of ``address``; an unfunded account holds zero."""
        request = AccountInfo(account=address, ledger_index="validated")
        result = await self._request("account_info", request, tolerated=(ACCOUNT_NOT_FOUND,))
        if result.get("error") == ACCOUNT_NOT_FOUND:
            return Decimal("0")
        try:
            return drops_to_xrp(result["account_data"]["Balance"])
        except (KeyError, TypeError) as exc:
            raise LedgerQueryFailed("account_info", "malformed response") from exc

    async def get_token_balance(self, address: str, token_code: str, issuer: str) -> Decimal:
        currency = to_currency_code(token_code)
        lines = await self.get_account_lines(address, peer=issuer)
        for line in lines:
            if line.get("currency") == currency and line.get("account") == issuer:
                return Decimal(str(line.get("balance", "0")))
        return Decimal("0")

    async def get_order_book(self, base: Currency, quote: Currency) -> Decimal:
        """Units of ``quote`` paid for one unit of ``base`` by the best offer."""
        request = BookOffers(taker_gets=quote, taker_pays=base, limit=10)
        result = await self._request("book_offers", request)
        for offer in result.get("offers", []):
            gets = offer.get("taker_gets_funded", offer.get("TakerGets"))
            pays = offer.get("taker_pays_funded", offer.get("TakerPays"))
            try:
                received = _amount_value(gets)
                paid = _amount_value(pays)
            except (KeyError, TypeError, ArithmeticError, InvalidInput):
                continue
            if received > 0 and paid > 0:
                return received / paid
        raise LedgerQueryFailed("book_offers", "no usable offers")

    async def submit_transaction(self, tx: Transaction, wallet: Wallet) -> SubmitResult:
        # Reliable submission waits for validation, so allow a few ledgers.
        try:
            response = await asyncio.wait_for(
                xrpl_tx.submit_and_wait(tx, self.client, wallet),
                max(self.timeout_s, 30.0),
            )
        except asyncio.TimeoutError as exc:
            raise LedgerQueryFailed("submit", "timed out") from exc
        except (httpx.HTTPError, XRPLException, OSError) as exc:
            raise LedgerQueryFailed("submit", str(exc)) from exc

        result = getattr(response, "result", response)
        tx_hash = _get_tx_hash_from_result(result)
        if not tx_hash:
            raise LedgerQueryFailed("submit", "no transaction hash returned")
        tx_json = result.get("tx_json") or result
        return SubmitResult(
            hash=tx_hash,
            sequence=tx_json.get("Sequence"),
            result_code=(result.get("meta") or {}).get("TransactionResult"),
            validated=bool(result.get("validated")),
        )

    async def get_transaction_status(self, tx_hash: str) -> Optional[LedgerTransaction]:
        """Return the transaction, or ``None`` while the ledger does not know it."""
        result = await self._request("tx", Tx(transaction=tx_hash), tolerated=(TX_NOT_FOUND,))
        if result.get("error") == TX_NOT_FOUND:
            return None
        return LedgerTransaction(
            hash=_get_tx_hash_from_result(result) or tx_hash,
            validated=bool(result.get("validated")),
            tx=result.get("tx_json") or result,
            meta=result.get("meta") or {},
        )


def xrp_currency() -> XRP:
    return XRP()


def issued_currency(token_code: str, issuer: str) -> IssuedCurrency:
    return IssuedCurrency(currency=to_currency_code(token_code), issuer=issuer)
