"""Signing payload lifecycle.

Every payload moves ``created -> pending -> {completed | cancelled | expired}``
and terminal phases never change again. A binding maps these phases onto the
status field of the record that owns the payload (a wallet link request or a
donation request).

Poll (:meth:`PayloadCoordinator.reconcile`) and push
(:meth:`PayloadCoordinator.handle_push_event`) both end in the same completion
routine. The routine re-reads the record and completes it with a conditional
write that only succeeds while the record is still open, so when the two race
exactly one of them performs the transition and the other returns the stored
result.

Side effects of a completion are applied after the status write and then
marked with ``effects_applied``. A completed record without the marker has its
effects applied again by the next poll or push, so every effect must be safe
to repeat.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from .config import TBL_WALLET_LINKS, TBL_WALLETS, WALLET_LINK_EXPIRE_MINUTES
from .database import Store
from .errors import InvalidInput, NotFound
from .utils import parse_iso, to_iso, utcnow
from .xaman import (
    Cancelled,
    CreatedPayload,
    Expired,
    PayloadStatus,
    Pending,
    PushEvent,
    Signed,
    XamanClient,
    sign_in_payload,
)

logger = logging.getLogger(__name__)

CREATED = "created"
PENDING = "pending"
COMPLETED = "completed"
CANCELLED = "cancelled"
EXPIRED = "expired"

OPEN_PHASES = (CREATED, PENDING)
TERMINAL_PHASES = (COMPLETED, CANCELLED, EXPIRED)

WALLET_LINK = "wallet_link"
EFFECTS_APPLIED = "effects_applied"


@dataclass(frozen=True)
class PayloadSnapshot:
    payload_id: str
    kind: str
    phase: str
    record: Dict[str, Any] = field(default_factory=dict)
    changed: bool = False

    @property
    def terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES


def _link_order(record: Dict[str, Any]):
    created_at = parse_iso(record.get("created_at")) or datetime.min.replace(tzinfo=timezone.utc)
    return created_at, record["id"]


class PayloadBinding(ABC):
    """Connects the lifecycle to the record that owns a payload."""

    kind: str
    collection: str
    statuses: Dict[str, str]

    def __init__(self, store: Store, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    @abstractmethod
    async def load(self, payload_id: str) -> Optional[Dict[str, Any]]:
        """Return the record owning ``payload_id``."""

    @abstractmethod
    async def complete(self, record: Dict[str, Any], signed: Signed) -> bool:
        """Move an open record to completed; return ``True`` only for the winning writer."""

    async def apply_effects(self, record: Dict[str, Any]) -> None:
        """Side effects of a completed record. May run more than once."""

    def effects_pending(self, record: Dict[str, Any]) -> bool:
        return record.get("status") == self.statuses[COMPLETED] and not record.get(EFFECTS_APPLIED)

    async def finish(self, record: Dict[str, Any]) -> None:
        await self.apply_effects(record)
        await self.store.update_merge(self.collection, record["id"], {EFFECTS_APPLIED: True})

    def phase_of(self, record: Dict[str, Any]) -> str:
        status = record.get("status")
        for phase, bound in self.statuses.items():
            if bound == status:
                return phase
        raise InvalidInput(f"Unknown {self.kind} status: {status}")

    def expires_at(self, record: Dict[str, Any]) -> Optional[datetime]:
        return parse_iso(record.get("expires_at"))

    def open_statuses(self) -> List[str]:
        return [self.statuses[phase] for phase in OPEN_PHASES]

    async def advance(
        self, record: Dict[str, Any], phase: str, fields: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Conditionally move ``record`` forward to ``phase``.

        ``pending`` is only reachable from ``created``; terminal phases from
        either open phase. Returns whether this call made the change.
        """
        allowed = [self.statuses[CREATED]] if phase == PENDING else self.open_statuses()
        update = {"status": self.statuses[phase], "updated_at": to_iso(self.clock())}
        if fields:
            update.update(fields)
        return await self.store.update_if(
            self.collection, record["id"], update, field="status", allowed=allowed
        )


class WalletLinkBinding(PayloadBinding):
    kind = WALLET_LINK
    collection = TBL_WALLET_LINKS
    statuses = {
        CREATED: CREATED,
        PENDING: PENDING,
        COMPLETED: COMPLETED,
        CANCELLED: CANCELLED,
        EXPIRED: EXPIRED,
    }

    async def load(self, payload_id: str) -> Optional[Dict[str, Any]]:
        return await self.store.get(self.collection, payload_id)

    async def complete(self, record: Dict[str, Any], signed: Signed) -> bool:
        if not signed.account:
            raise InvalidInput("Xaman response does not include a wallet address")
        fields = {
            "completed_at": to_iso(self.clock()),
            "result_address": signed.account,
            "result_tx_hash": signed.txid,
        }
        won = await self.advance(record, COMPLETED, fields)
        if won:
            await self.finish({**record, **fields, "status": self.statuses[COMPLETED]})
        return won

    async def apply_effects(self, record: Dict[str, Any]) -> None:
        await self._link_wallet(record, record["result_address"], record["completed_at"])

    async def _link_wallet(self, record: Dict[str, Any], address: str, linked_at: str) -> None:
        subject_id = record["subject_id"]
        payload_id = record["id"]
        wallets = await self.store.query(TBL_WALLETS, "subject_id", subject_id)
        linked = [w for w in wallets if w.get("status") == "linked" and w.get("id") != payload_id]

        for wallet in linked:
            if wallet.get("address") == address:
                await self.store.update_merge(
                    TBL_WALLETS, wallet["id"], {"status": "replaced", "replaced_by": payload_id}
                )
        has_primary = any(w.get("is_primary") and w.get("address") != address for w in linked)

        await self.store.put(
            TBL_WALLETS,
            payload_id,
            {
                "subject_id": subject_id,
                "address": address,
                "status": "linked",
                "is_primary": not has_primary,
                "link_payload_id": payload_id,
                "linked_at": linked_at,
            },
        )
        logger.info("Linked wallet %s to subject %s", address, subject_id)


class PayloadCoordinator:
    def __init__(
        self,
        store: Store,
        provider: XamanClient,
        *,
        clock: Callable[[], datetime] = utcnow,
        link_expire_minutes: int = WALLET_LINK_EXPIRE_MINUTES,
    ):
        self.store = store
        self.provider = provider
        self.clock = clock
        self.link_expire_minutes = link_expire_minutes
        self.links = WalletLinkBinding(store, clock)
        self._bindings: Dict[str, PayloadBinding] = {}
        self.register(self.links)

    def register(self, binding: PayloadBinding) -> None:
        self._bindings[binding.kind] = binding

    def binding(self, kind: str) -> PayloadBinding:
        try:
            return self._bindings[kind]
        except KeyError:
            raise InvalidInput(f"Unknown payload kind: {kind}") from None

    # === CREATE ===

    async def create_payload(self, body: Dict[str, Any]) -> CreatedPayload:
        return await self.provider.create_payload(body)

    async def create_wallet_link(self, subject_id: str) -> Dict[str, Any]:
        """Start a wallet link for ``subject_id``, superseding any open one."""
        if not subject_id:
            raise InvalidInput("subject_id is required")

        body = sign_in_payload(
            identifier=f"wl-{uuid.uuid4().hex[:24]}",
            blob={"purpose": "wallet-link", "subjectId": subject_id},
            expire_minutes=self.link_expire_minutes,
        )
        created = await self.provider.create_payload(body)

        now = self.clock()
        record = {
            "subject_id": subject_id,
            "provider_payload_id": created.uuid,
            "qr_payload": created.qr_uri,
            "qr_png": created.qr_png,
            "websocket_url": created.websocket_url,
            "status": CREATED,
            "created_at": to_iso(now),
            "expires_at": to_iso(now + timedelta(minutes=self.link_expire_minutes)),
            "completed_at": None,
            "result_address": None,
        }
        record = await self.store.put(self.links.collection, created.uuid, record)
        await self._supersede_older_links(record)
        return await self._load(self.links, created.uuid)

    async def _supersede_older_links(self, record: Dict[str, Any]) -> None:
        # Each request cancels only older open requests, so concurrent links
        # for one subject converge on the newest.
        newest = _link_order(record)
        for previous in await self.store.query(
            self.links.collection, "subject_id", record["subject_id"]
        ):
            if previous["id"] == record["id"]:
                continue
            if previous.get("status") not in self.links.open_statuses():
                continue
            if _link_order(previous) >= newest:
                continue
            superseded = await self.links.advance(
                previous, CANCELLED, {"cancel_reason": "superseded", "superseded_by": record["id"]}
            )
            if superseded:
                logger.info("Superseded wallet link %s for %s", previous["id"], record["subject_id"])

    # === RECONCILE ===

    async def reconcile(self, payload_id: str, kind: str = WALLET_LINK) -> PayloadSnapshot:
        """Poll the provider for ``payload_id`` and apply what it reports.

        Terminal records are returned without contacting the provider. A
        provider failure propagates as ``ProviderUnavailable`` and leaves the
        record untouched.
        """
        binding = self.binding(kind)
        record = await self._load(binding, payload_id)
        if binding.phase_of(record) in TERMINAL_PHASES:
            return await self._resume(binding, payload_id, record)

        status = await self.provider.get_payload_status(payload_id)
        return await self.apply_status(binding, record, status)

    async def apply_status(
        self, binding: PayloadBinding, record: Dict[str, Any], status: PayloadStatus
    ) -> PayloadSnapshot:
        payload_id = status.uuid
        if isinstance(status, Signed):
            return await self._complete(binding, payload_id, record, status)

        phase = binding.phase_of(record)
        fields: Optional[Dict[str, Any]] = None
        if isinstance(status, Cancelled):
            target = CANCELLED
            fields = {"cancel_reason": status.reason}
        elif isinstance(status, Expired):
            target = EXPIRED
        elif isinstance(status, Pending):
            if self._past_expiry(binding, record, status):
                target = EXPIRED
            elif phase == CREATED:
                target = PENDING
            else:
                return self._snapshot(binding, payload_id, record)
        else:
            raise InvalidInput(f"Unsupported payload status: {status!r}")

        if phase in TERMINAL_PHASES:
            return self._snapshot(binding, payload_id, record)

        changed = await binding.advance(record, target, fields)
        if changed:
            logger.info("%s payload %s -> %s", binding.kind, payload_id, target)
        return self._snapshot(binding, payload_id, await self._load(binding, payload_id), changed)

    async def try_complete(
        self, payload_id: str, signed: Signed, kind: str = WALLET_LINK
    ) -> PayloadSnapshot:
        """Single completion entry point for poll and push."""
        binding = self.binding(kind)
        record = await self._load(binding, payload_id)
        return await self._complete(binding, payload_id, record, signed)

    async def _complete(
        self, binding: PayloadBinding, payload_id: str, record: Dict[str, Any], signed: Signed
    ) -> PayloadSnapshot:
        if binding.phase_of(record) in TERMINAL_PHASES:
            logger.debug("%s payload %s already %s", binding.kind, payload_id, record.get("status"))
            return await self._resume(binding, payload_id, record)

        won = await binding.complete(record, signed)
        if won:
            logger.info("%s payload %s completed", binding.kind, payload_id)
        return self._snapshot(binding, payload_id, await self._load(binding, payload_id), won)

    # === PUSH ===

    async def handle_push_event(self, event: PushEvent) -> PayloadSnapshot:
        """Route a provider notification to the owning record and reconcile it.

        The event is only a trigger: the authoritative status is always
        fetched from the provider, so duplicated or reordered events are
        harmless.
        """
        for binding in self._bindings.values():
            if await binding.load(event.payload_id) is not None:
                return await self.reconcile(event.payload_id, binding.kind)
        raise NotFound(f"No request found for payload {event.payload_id}")

    async def watch(
        self, payload_id: str, websocket_url: str, kind: str = WALLET_LINK
    ) -> PayloadSnapshot:
        """Follow the provider's status stream and reconcile once it resolves."""
        async for event in self.provider.stream_events(payload_id, websocket_url):
            if event.resolving:
                break
        return await self.reconcile(payload_id, kind)

    # === HELPERS ===

    async def _load(self, binding: PayloadBinding, payload_id: str) -> Dict[str, Any]:
        record = await binding.load(payload_id)
        if record is None:
            raise NotFound(f"{binding.kind} payload not found: {payload_id}")
        return record

    async def _resume(
        self, binding: PayloadBinding, payload_id: str, record: Dict[str, Any]
    ) -> PayloadSnapshot:
        if binding.effects_pending(record):
            logger.warning("Re-applying completion effects for %s payload %s", binding.kind, payload_id)
            await binding.finish(record)
            record = await self._load(binding, payload_id)
        return self._snapshot(binding, payload_id, record)

    def _past_expiry(self, binding: PayloadBinding, record: Dict[str, Any], status: Pending) -> bool:
        # The earlier of our own deadline and the provider's one wins.
        horizons = [h for h in (binding.expires_at(record), status.expires_at) if h is not None]
        return bool(horizons) and self.clock() > min(horizons)

    def _snapshot(
        self,
        binding: PayloadBinding,
        payload_id: str,
        record: Dict[str, Any],
        changed: bool = False,
    ) -> PayloadSnapshot:
        return PayloadSnapshot(
            payload_id=payload_id,
            kind=binding.kind,
            phase=binding.phase_of(record),
            record=record,
            changed=changed,
        )
