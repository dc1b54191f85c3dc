import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends

from ..core.auth import optional_subject
from ..core.donations import DonationHandle, DonationStatus
from ..core.projects import PriceQuote
from ..core.services import Services, get_services
from ..core.xaman import decode_push_event
from ..models import (
    CallbackAck,
    DonationCreate,
    DonationHandleOut,
    DonationStatusOut,
    EligibilityOut,
    PriceQuoteOut,
    SigningRefs,
    TokenPriceOut,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def quote_out(quote: PriceQuote) -> PriceQuoteOut:
    return PriceQuoteOut(
        project_id=quote.project_id,
        price=TokenPriceOut(
            rlusd=quote.price.rlusd, xrp=quote.price.xrp, timestamp=quote.price.timestamp
        ),
        rate=quote.rate.rate,
        rate_source=quote.rate.source,
        rate_timestamp=quote.rate.timestamp,
        quality_score=quote.quality_score,
        total_donations_xrp=quote.total_donations_xrp,
    )


def status_out(status: DonationStatus) -> DonationStatusOut:
    return DonationStatusOut(
        id=status.id,
        project_id=status.project_id,
        amount=status.amount,
        destination_tag=status.destination_tag,
        status=status.status,
        created_at=status.created_at,
        expires_at=status.expires_at,
        provider_payload_id=status.provider_payload_id,
        settled_tx_hash=status.settled_tx_hash,
        donor_address=status.donor_address,
        failure_reason=status.failure_reason,
        check_id=status.check_id,
        reward_status=status.reward_status,
    )


def handle_out(handle: DonationHandle) -> DonationHandleOut:
    eligibility = handle.eligibility
    return DonationHandleOut(
        request=status_out(handle.request),
        signing=SigningRefs(
            payload_id=handle.payload.uuid,
            qr_payload=handle.payload.qr_uri,
            qr_png=handle.payload.qr_png,
            websocket_url=handle.payload.websocket_url,
        ),
        quote=quote_out(handle.quote) if handle.quote is not None else None,
        eligibility=EligibilityOut(
            has_trustline=eligibility.has_trustline,
            xrp_balance=float(eligibility.xrp_balance),
            token_balance=float(eligibility.token_balance),
            can_donate=eligibility.can_donate,
        )
        if eligibility is not None
        else None,
        warnings=list(handle.warnings),
    )


@router.post("/donations", tags=["donations"], response_model=DonationHandleOut)
async def create_donation(
    body: DonationCreate,
    subject_id: Optional[str] = Depends(optional_subject),
    services: Services = Depends(get_services),
):
    handle = await services.donations.create_request(
        body.project_id, body.amount, subject_id, include_quote=body.include_quote
    )
    return handle_out(handle)


@router.get("/donations/{request_id}", tags=["donations"], response_model=DonationStatusOut)
async def get_donation_status(request_id: str, services: Services = Depends(get_services)):
    return status_out(await services.donations.get_status(request_id))


@router.post(
    "/donations/{request_id}/reconcile", tags=["donations"], response_model=DonationStatusOut
)
async def reconcile_donation(request_id: str, services: Services = Depends(get_services)):
    return status_out(await services.donations.reconcile(request_id))


@router.post("/xaman/callback", tags=["xaman"], response_model=CallbackAck)
async def xaman_callback(
    body: Dict[str, Any] = Body(...),
    services: Services = Depends(get_services),
):
    event = decode_push_event(body)
    logger.info("Xaman callback for payload %s (signed=%s)", event.payload_id, event.signed)
    snapshot = await services.coordinator.handle_push_event(event)
    return CallbackAck(
        payload_id=snapshot.payload_id,
        kind=snapshot.kind,
        status=snapshot.record.get("status", snapshot.phase),
    )
