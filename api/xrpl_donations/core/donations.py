"""Donation request lifecycle: create, observe, settle.

A request is persisted ``created``, gets a Payment payload from the signing
provider and waits in ``awaiting_signature``. Settlement happens once, in
:meth:`DonationEngine.settle`, whichever of poll or push gets there first.
Expiry is computed when a request is read; nothing sweeps.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

from xrpl.models.amounts import IssuedCurrencyAmount
from xrpl.models.transactions import CheckCreate
from xrpl.utils import datetime_to_ripple_time
from xrpl.wallet import Wallet

from .check_id import generate_check_id
from .config import (
    DONATION_EXPIRE_MINUTES,
    DONATION_MAX_XRP,
    REWARD_CHECK_EXPIRE_DAYS,
    TBL_DONATION_RECORDS,
    TBL_DONATION_REQUESTS,
    TBL_WALLETS,
    VERIFY_DONATION_TX,
)
from .database import Store
from .errors import (
    Conflict,
    InvalidInput,
    LedgerQueryFailed,
    NotFound,
    ProviderUnavailable,
    RateUnavailable,
)
from .payloads import (
    CANCELLED,
    COMPLETED,
    CREATED,
    EXPIRED,
    PENDING,
    PayloadBinding,
    PayloadCoordinator,
)
from .projects import PriceQuote, Project, ProjectDirectory
from .utils import parse_iso, sha256_hex, to_iso, utcnow
from .wallet import Eligibility, check_eligibility
from .xaman import CreatedPayload, Signed, transaction_payload
from .xrpl import (
    LedgerClient,
    decode_memo_data,
    encode_memos,
    memo_json,
    to_currency_code,
    xrp_to_drops,
)

logger = logging.getLogger(__name__)

DONATION = "donation"

STATUS_CREATED = "created"
STATUS_AWAITING = "awaiting_signature"
STATUS_SETTLED = "settled"
STATUS_EXPIRED = "expired"
STATUS_FAILED = "failed"

OPEN_STATUSES = (STATUS_CREATED, STATUS_AWAITING)
TERMINAL_STATUSES = (STATUS_SETTLED, STATUS_EXPIRED, STATUS_FAILED)

VERIFICATION_MEMO_TYPE = "donation_verification"
MAX_TAG_ATTEMPTS = 5

REWARD_PENDING = "pending"
REWARD_ISSUING = "issuing"
REWARD_ISSUED = "issued"
REWARD_FAILED = "failed"


@dataclass(frozen=True)
class DonationStatus:
    id: str
    project_id: str
    amount: float
    destination_tag: int
    status: str
    created_at: Optional[datetime]
    expires_at: Optional[datetime]
    subject_id: Optional[str] = None
    provider_payload_id: Optional[str] = None
    settled_tx_hash: Optional[str] = None
    donor_address: Optional[str] = None
    failure_reason: Optional[str] = None
    check_id: Optional[str] = None
    reward_status: Optional[str] = None


@dataclass(frozen=True)
class DonationHandle:
    request: DonationStatus
    payload: CreatedPayload
    quote: Optional[PriceQuote] = None
    eligibility: Optional[Eligibility] = None
    warnings: List[str] = field(default_factory=list)


def status_from_record(record: Dict[str, Any], now: datetime) -> DonationStatus:
    status = record["status"]
    expires_at = parse_iso(record.get("expires_at"))
    if status in OPEN_STATUSES and expires_at is not None and now > expires_at:
        status = STATUS_EXPIRED
    return DonationStatus(
        id=record["id"],
        project_id=record["project_id"],
        amount=float(record["amount"]),
        destination_tag=int(record["destination_tag"]),
        status=status,
        created_at=parse_iso(record.get("created_at")),
        expires_at=expires_at,
        subject_id=record.get("subject_id"),
        provider_payload_id=record.get("provider_payload_id"),
        settled_tx_hash=record.get("settled_tx_hash"),
        donor_address=record.get("donor_address"),
        failure_reason=record.get("failure_reason"),
        check_id=record.get("check_id"),
        reward_status=record.get("reward_status"),
    )


def parse_amount(amount: Any, ceiling: float) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidInput("Invalid amount") from exc
    if not value.is_finite() or value <= 0:
        raise InvalidInput("Amount must be greater than 0")
    if value > Decimal(str(ceiling)):
        raise InvalidInput(f"Amount must not exceed {ceiling} XRP")
    if value.as_tuple().exponent < -6:
        raise InvalidInput("Amount supports at most 6 decimal places")
    return value


class DonationBinding(PayloadBinding):
    kind = DONATION
    collection = TBL_DONATION_REQUESTS
    statuses = {
        CREATED: STATUS_CREATED,
        PENDING: STATUS_AWAITING,
        COMPLETED: STATUS_SETTLED,
        CANCELLED: STATUS_FAILED,
        EXPIRED: STATUS_EXPIRED,
    }

    def __init__(self, engine: "DonationEngine"):
        super().__init__(engine.store, engine.clock)
        self.engine = engine

    async def load(self, payload_id: str) -> Optional[Dict[str, Any]]:
        rows = await self.store.query(self.collection, "provider_payload_id", payload_id)
        return rows[0] if rows else None

    async def complete(self, record: Dict[str, Any], signed: Signed) -> bool:
        return await self.engine.settle(record, signed)

    async def apply_effects(self, record: Dict[str, Any]) -> None:
        await self.engine.apply_settlement_effects(record)


class DonationEngine:
    def __init__(
        self,
        store: Store,
        ledger: LedgerClient,
        coordinator: PayloadCoordinator,
        projects: ProjectDirectory,
        *,
        treasury_address: str,
        max_amount: float = DONATION_MAX_XRP,
        expire_minutes: int = DONATION_EXPIRE_MINUTES,
        verify_transactions: bool = VERIFY_DONATION_TX,
        issuer_wallet: Optional[Wallet] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.ledger = ledger
        self.coordinator = coordinator
        self.projects = projects
        self.treasury_address = treasury_address
        self.max_amount = max_amount
        self.expire_minutes = expire_minutes
        self.verify_transactions = verify_transactions
        self.issuer_wallet = issuer_wallet
        self.clock = clock
        self.binding = DonationBinding(self)
        coordinator.register(self.binding)

    # === CREATE ===

    async def create_request(
        self,
        project_id: str,
        amount: Any,
        subject_id: Optional[str] = None,
        *,
        include_quote: bool = True,
    ) -> DonationHandle:
        value = parse_amount(amount, self.max_amount)
        if not self.treasury_address:
            raise ProviderUnavailable("No treasury wallet configured")
        project = await self.projects.get_project(project_id)

        # A failed quote stops the donation; eligibility problems only warn.
        quote = await self.projects.quote(project) if include_quote else None
        eligibility, warnings = await self._soft_eligibility(project, subject_id)

        request_id = str(uuid.uuid4())
        now = self.clock()
        created_at = to_iso(now)
        verification_hash = sha256_hex(
            f"{project.id}:{request_id}:{value}:{created_at}".encode()
        )[:32]
        record = {
            "project_id": project.id,
            "subject_id": subject_id,
            "amount": float(value),
            "destination": self.treasury_address,
            "destination_tag": await self._allocate_destination_tag(),
            "verification_hash": verification_hash,
            "status": STATUS_CREATED,
            "provider_payload_id": None,
            "created_at": created_at,
            "expires_at": to_iso(now + timedelta(minutes=self.expire_minutes)),
            "settled_tx_hash": None,
        }
        record = await self.store.put(TBL_DONATION_REQUESTS, request_id, record)

        try:
            payload = await self.coordinator.create_payload(
                self._payment_payload(record, value, quote)
            )
        except ProviderUnavailable as exc:
            await self.binding.advance(record, CANCELLED, {"failure_reason": str(exc)})
            raise

        await self.binding.advance(record, PENDING, {"provider_payload_id": payload.uuid})
        logger.info(
            "Donation request %s for %s: %s XRP, tag %s, payload %s",
            request_id,
            project.id,
            value,
            record["destination_tag"],
            payload.uuid,
        )
        return DonationHandle(
            request=await self.get_status(request_id),
            payload=payload,
            quote=quote,
            eligibility=eligibility,
            warnings=warnings,
        )

    async def _soft_eligibility(self, project: Project, subject_id: Optional[str]):
        warnings: List[str] = []
        address = await self._donor_address(subject_id)
        if not address:
            return None, warnings
        try:
            eligibility = await check_eligibility(
                self.ledger, address, project.token_code, project.issuer_address
            )
        except LedgerQueryFailed as exc:
            logger.warning("Eligibility check failed for %s: %s", address, exc)
            warnings.append(f"Eligibility check failed ({exc.query}); donation may not succeed")
            return None, warnings
        if not eligibility.has_trustline:
            warnings.append(f"No trustline for {project.token_code} from {project.issuer_address}")
        if eligibility.xrp_balance <= 0:
            warnings.append("Wallet has no XRP balance")
        return eligibility, warnings

    async def _donor_address(self, subject_id: Optional[str]) -> Optional[str]:
        if not subject_id:
            return None
        wallets = await self.store.query(TBL_WALLETS, "subject_id", subject_id)
        linked = [w for w in wallets if w.get("status") == "linked"]
        primary = [w for w in linked if w.get("is_primary")]
        chosen = (primary or linked or [None])[0]
        return chosen.get("address") if chosen else None

    async def _allocate_destination_tag(self) -> int:
        for _ in range(MAX_TAG_ATTEMPTS):
            tag = secrets.randbelow(2**32 - 1) + 1
            clashes = await self.store.query(TBL_DONATION_REQUESTS, "destination_tag", tag)
            if not any(
                r.get("status") in OPEN_STATUSES and r.get("destination") == self.treasury_address
                for r in clashes
            ):
                return tag
        raise Conflict("Could not allocate a destination tag")

    def _payment_payload(
        self, record: Dict[str, Any], value: Decimal, quote: Optional[PriceQuote]
    ) -> Dict[str, Any]:
        txjson = {
            "TransactionType": "Payment",
            "Destination": record["destination"],
            "DestinationTag": record["destination_tag"],
            "Amount": str(xrp_to_drops(value)),
            "Memos": [memo_json(VERIFICATION_MEMO_TYPE, record["verification_hash"])],
        }
        blob: Dict[str, Any] = {
            "purpose": "donation",
            "projectId": record["project_id"],
            "amount": float(value),
            "verificationHash": record["verification_hash"],
        }
        if quote is not None:
            blob["tokenPriceXrp"] = quote.price.xrp
        return transaction_payload(
            txjson,
            identifier=f"dn-{record['verification_hash'][:24]}",
            blob=blob,
            expire_minutes=self.expire_minutes,
        )

    # === READ ===

    async def _get_record(self, request_id: str) -> Dict[str, Any]:
        record = await self.store.get(TBL_DONATION_REQUESTS, request_id)
        if record is None:
            raise NotFound(f"Donation request not found: {request_id}")
        return record

    async def get_status(self, request_id: str) -> DonationStatus:
        return status_from_record(await self._get_record(request_id), self.clock())

    async def reconcile(self, request_id: str) -> DonationStatus:
        """Poll the signing provider for the request's payload."""
        record = await self._get_record(request_id)
        payload_id = record.get("provider_payload_id")
        if payload_id and (
            record["status"] in OPEN_STATUSES or self.binding.effects_pending(record)
        ):
            await self.coordinator.reconcile(payload_id, DONATION)
        return await self.get_status(request_id)

    # === SETTLE ===

    async def finalize_on_completion(self, request_id: str, signed: Signed) -> DonationStatus:
        await self.settle(await self._get_record(request_id), signed)
        return await self.get_status(request_id)

    async def settle(self, record: Dict[str, Any], signed: Signed) -> bool:
        """Settle ``record`` from a signed provider result.

        Returns ``True`` only for the call that performed the settlement.
        Terminal requests are left alone, except that a settled request whose
        effects never completed has them applied again.
        """
        request_id = record["id"]
        if record["status"] in TERMINAL_STATUSES:
            if self.binding.effects_pending(record):
                logger.warning("Re-applying settlement effects for donation %s", request_id)
                await self.binding.finish(record)
            else:
                logger.debug("Donation %s already %s", request_id, record["status"])
            return False
        if not signed.txid:
            raise InvalidInput("Signed response does not include a transaction hash")

        if self.verify_transactions:
            reason = await self._verify_transaction(record, signed)
            if reason:
                logger.warning("Donation %s failed verification: %s", request_id, reason)
                await self.binding.advance(
                    record, CANCELLED, {"failure_reason": reason, "failed_tx_hash": signed.txid}
                )
                return False

        fields = {
            "settled_tx_hash": signed.txid,
            "donor_address": signed.account,
            "settled_at": to_iso(self.clock()),
        }
        if self.issuer_wallet is not None and signed.account:
            fields["reward_status"] = REWARD_PENDING
        won = await self.binding.advance(record, COMPLETED, fields)
        if not won:
            logger.debug("Donation %s settled by another writer", request_id)
            return False

        logger.info("Donation %s settled by %s", request_id, signed.txid)
        await self.binding.finish({**record, **fields, "status": STATUS_SETTLED})
        return True

    async def apply_settlement_effects(self, record: Dict[str, Any]) -> None:
        """Write the DonationRecord and hand out the reward, once each.

        The DonationRecord is keyed by request id. The reward is claimed with a
        conditional write before anything is submitted to the ledger.
        """
        await self._record_donation(record)
        if record.get("reward_status") != REWARD_PENDING or self.issuer_wallet is None:
            return
        claimed = await self.store.update_if(
            TBL_DONATION_REQUESTS,
            record["id"],
            {"reward_status": REWARD_ISSUING},
            field="reward_status",
            allowed=[REWARD_PENDING],
        )
        if claimed:
            await self._issue_reward(record, record["donor_address"])

    async def _verify_transaction(self, record: Dict[str, Any], signed: Signed) -> Optional[str]:
        """Compare the validated ledger transaction with the request.

        Returns a mismatch description, or ``None`` when it matches. A
        transaction the ledger has not validated yet raises
        :class:`LedgerQueryFailed` so the caller retries later.
        """
        tx = await self.ledger.get_transaction_status(signed.txid)
        if tx is None or not tx.validated:
            raise LedgerQueryFailed("tx", f"transaction {signed.txid} not validated yet")

        data = tx.tx
        if tx.result_code and tx.result_code != "tesSUCCESS":
            return f"transaction result {tx.result_code}"
        if data.get("TransactionType") != "Payment":
            return f"unexpected transaction type {data.get('TransactionType')}"
        if signed.account and data.get("Account") != signed.account:
            return f"sender {data.get('Account')} does not match signer {signed.account}"
        if data.get("Destination") != record["destination"]:
            return f"destination {data.get('Destination')} does not match"
        if data.get("DestinationTag") != record["destination_tag"]:
            return f"destination tag {data.get('DestinationTag')} does not match"
        expected = str(xrp_to_drops(record["amount"]))
        if str(tx.delivered_amount) != expected:
            return f"amount {tx.delivered_amount} does not match {expected} drops"
        memos = [decode_memo_data(m) for m in data.get("Memos") or []]
        if record["verification_hash"] not in memos:
            return "verification memo missing"
        return None

    async def _record_donation(self, record: Dict[str, Any]) -> None:
        await self.store.put(
            TBL_DONATION_RECORDS,
            record["id"],
            {
                "request_id": record["id"],
                "project_id": record["project_id"],
                "subject_id": record.get("subject_id"),
                "donor_address": record.get("donor_address"),
                "amount": record["amount"],
                "tx_hash": record["settled_tx_hash"],
                "destination_tag": record["destination_tag"],
                "verification_hash": record["verification_hash"],
                "created_at": record.get("settled_at") or to_iso(self.clock()),
            },
        )

    async def _issue_reward(self, record: Dict[str, Any], donor_address: str) -> None:
        """Send the donor's project tokens as a ledger Check.

        Failures are recorded on the request; the donation stays settled.
        """
        request_id = record["id"]
        try:
            project = await self.projects.get_project(record["project_id"])
            if project.issuer_address != self.issuer_wallet.address:
                raise InvalidInput(f"Issuer {project.issuer_address} is not managed here")
            quote = await self.projects.quote(project)
            tokens = (
                Decimal(str(record["amount"])) / Decimal(str(quote.price.xrp))
            ).quantize(Decimal("0.000001"))
            if tokens <= 0:
                raise InvalidInput("Donation too small for a token reward")

            expiration = self.clock() + timedelta(days=REWARD_CHECK_EXPIRE_DAYS)
            tx = CheckCreate(
                account=self.issuer_wallet.address,
                destination=donor_address,
                send_max=IssuedCurrencyAmount(
                    currency=to_currency_code(project.token_code),
                    issuer=project.issuer_address,
                    value=format(tokens, "f"),
                ),
                expiration=datetime_to_ripple_time(expiration),
                memos=encode_memos({"token_check": request_id}),
            )
            result = await self.ledger.submit_transaction(tx, self.issuer_wallet)
            if result.result_code != "tesSUCCESS" or result.sequence is None:
                raise LedgerQueryFailed("check_create", f"result {result.result_code}")
        except (InvalidInput, LedgerQueryFailed, RateUnavailable, NotFound) as exc:
            logger.warning("Reward check for donation %s failed: %s", request_id, exc)
            await self.store.update_merge(
                TBL_DONATION_REQUESTS,
                request_id,
                {"reward_status": REWARD_FAILED, "reward_error": str(exc)},
            )
            return

        check_id = generate_check_id(self.issuer_wallet.address, result.sequence)
        await self.store.update_merge(
            TBL_DONATION_REQUESTS,
            request_id,
            {
                "reward_status": REWARD_ISSUED,
                "reward_tokens": float(tokens),
                "reward_tx_hash": result.hash,
                "check_id": check_id,
            },
        )
        logger.info("Issued %s %s to %s as check %s", tokens, project.token_code, donor_address, check_id)
