import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from xrpl.core.addresscodec import is_valid_classic_address

from ..core.auth import require_subject
from ..core.errors import InvalidAddress, RateUnavailable
from ..core.payloads import WALLET_LINK
from ..core.services import Services, get_services
from ..core.utils import parse_iso
from ..core.wallet import get_wallet_balance
from ..models import LinkHandle, LinkStatus, SigningRefs, WalletBalanceOut

logger = logging.getLogger(__name__)

router = APIRouter()


def _link_status(payload_id: str, record: Dict[str, Any]) -> LinkStatus:
    return LinkStatus(
        payload_id=payload_id,
        status=record["status"],
        address=record.get("result_address"),
        completed_at=parse_iso(record.get("completed_at")),
        expires_at=parse_iso(record.get("expires_at")),
    )


@router.post("/wallets/link", tags=["wallets"], response_model=LinkHandle)
async def create_wallet_link(
    subject_id: str = Depends(require_subject),
    services: Services = Depends(get_services),
):
    record = await services.coordinator.create_wallet_link(subject_id)
    return LinkHandle(
        request_id=record["id"],
        signing=SigningRefs(
            payload_id=record["provider_payload_id"],
            qr_payload=record["qr_payload"],
            qr_png=record.get("qr_png"),
            websocket_url=record.get("websocket_url"),
        ),
        status=record["status"],
        expires_at=parse_iso(record.get("expires_at")),
    )


@router.get("/wallets/link/{payload_id}", tags=["wallets"], response_model=LinkStatus)
async def poll_link_status(payload_id: str, services: Services = Depends(get_services)):
    snapshot = await services.coordinator.reconcile(payload_id, WALLET_LINK)
    return _link_status(payload_id, snapshot.record)


@router.get("/wallets/{address}/balance", tags=["wallets"], response_model=WalletBalanceOut)
async def wallet_balance(address: str, services: Services = Depends(get_services)):
    if not is_valid_classic_address(address):
        raise InvalidAddress(f"Invalid XRPL address: {address}")
    try:
        rate = await services.rate_cache.get_rate()
    except RateUnavailable as exc:
        logger.warning("Quote currency value omitted for %s: %s", address, exc)
        rate = None
    balance = await get_wallet_balance(services.ledger, address, rate)
    return WalletBalanceOut(
        address=balance.address,
        balance_drops=balance.balance_drops,
        balance_xrp=float(balance.balance_xrp),
        balance_rlusd=balance.balance_rlusd,
    )
