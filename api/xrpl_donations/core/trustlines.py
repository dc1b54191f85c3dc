"""TrustSet requests that let a donor hold a project's reward token.

A trustline request follows the same payload lifecycle as a wallet link; it
has no side effects beyond its own status.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from xrpl.core.addresscodec import is_valid_classic_address

from .config import TBL_TRUSTLINE_REQUESTS, TRUSTLINE_EXPIRE_MINUTES
from .database import Store
from .errors import Conflict, InvalidAddress
from .payloads import (
    CANCELLED,
    COMPLETED,
    CREATED,
    EXPIRED,
    PENDING,
    PayloadBinding,
    PayloadCoordinator,
    PayloadSnapshot,
)
from .projects import ProjectDirectory
from .utils import to_iso, utcnow
from .wallet import has_trustline
from .xaman import Signed, trust_set_payload
from .xrpl import LedgerClient, to_currency_code

logger = logging.getLogger(__name__)

TRUSTLINE = "trustline"


class TrustlineBinding(PayloadBinding):
    kind = TRUSTLINE
    collection = TBL_TRUSTLINE_REQUESTS
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
        fields = {
            "completed_at": to_iso(self.clock()),
            "result_address": signed.account,
            "result_tx_hash": signed.txid,
        }
        won = await self.advance(record, COMPLETED, fields)
        if won:
            logger.info("Trustline for %s set by %s", record["token_code"], record["donor_address"])
            await self.finish({**record, **fields, "status": self.statuses[COMPLETED]})
        return won


class TrustlineService:
    def __init__(
        self,
        store: Store,
        ledger: LedgerClient,
        coordinator: PayloadCoordinator,
        projects: ProjectDirectory,
        *,
        expire_minutes: int = TRUSTLINE_EXPIRE_MINUTES,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.ledger = ledger
        self.coordinator = coordinator
        self.projects = projects
        self.expire_minutes = expire_minutes
        self.clock = clock
        self.binding = TrustlineBinding(store, clock)
        coordinator.register(self.binding)

    async def create_trustline_request(
        self, project_id: str, donor_address: str, subject_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Create a TrustSet payload for ``donor_address`` and the project's token.

        Raises :class:`Conflict` when the trustline already exists.
        """
        if not donor_address or not is_valid_classic_address(donor_address):
            raise InvalidAddress(f"Invalid XRPL address: {donor_address}")
        project = await self.projects.get_project(project_id)
        if await has_trustline(self.ledger, donor_address, project.token_code, project.issuer_address):
            raise Conflict(f"Trustline for {project.token_code} is already set")

        request_id = str(uuid.uuid4())
        body = trust_set_payload(
            donor_address,
            to_currency_code(project.token_code),
            project.issuer_address,
            identifier=f"tl-{request_id.replace('-', '')[:24]}",
            blob={"purpose": "trustline", "requestId": request_id, "projectId": project.id},
            expire_minutes=self.expire_minutes,
        )
        created = await self.coordinator.create_payload(body)

        now = self.clock()
        record = {
            "request_id": request_id,
            "project_id": project.id,
            "token_code": project.token_code,
            "issuer_address": project.issuer_address,
            "donor_address": donor_address,
            "subject_id": subject_id,
            "provider_payload_id": created.uuid,
            "qr_payload": created.qr_uri,
            "qr_png": created.qr_png,
            "websocket_url": created.websocket_url,
            "status": CREATED,
            "created_at": to_iso(now),
            "expires_at": to_iso(now + timedelta(minutes=self.expire_minutes)),
        }
        logger.info(
            "Trustline request %s for %s on %s, payload %s",
            request_id,
            donor_address,
            project.token_code,
            created.uuid,
        )
        return await self.store.put(self.binding.collection, created.uuid, record)

    async def reconcile(self, payload_id: str) -> PayloadSnapshot:
        return await self.coordinator.reconcile(payload_id, TRUSTLINE)
