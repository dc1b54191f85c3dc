from typing import Optional

from fastapi import APIRouter, Depends

from ..core.auth import optional_subject
from ..core.services import Services, get_services
from ..core.utils import parse_iso
from ..models import SigningRefs, TrustlineCreate, TrustlineHandle, TrustlineStatus

router = APIRouter()


@router.post("/trustlines", tags=["trustlines"], response_model=TrustlineHandle)
async def create_trustline(
    body: TrustlineCreate,
    subject_id: Optional[str] = Depends(optional_subject),
    services: Services = Depends(get_services),
):
    record = await services.trustlines.create_trustline_request(
        body.project_id, body.donor_address, subject_id
    )
    return TrustlineHandle(
        request_id=record["request_id"],
        project_id=record["project_id"],
        token_code=record["token_code"],
        issuer_address=record["issuer_address"],
        signing=SigningRefs(
            payload_id=record["provider_payload_id"],
            qr_payload=record["qr_payload"],
            qr_png=record.get("qr_png"),
            websocket_url=record.get("websocket_url"),
        ),
        status=record["status"],
        expires_at=parse_iso(record.get("expires_at")),
    )


@router.get("/trustlines/{payload_id}", tags=["trustlines"], response_model=TrustlineStatus)
async def poll_trustline_status(payload_id: str, services: Services = Depends(get_services)):
    record = (await services.trustlines.reconcile(payload_id)).record
    return TrustlineStatus(
        payload_id=payload_id,
        status=record["status"],
        tx_hash=record.get("result_tx_hash"),
        completed_at=parse_iso(record.get("completed_at")),
        expires_at=parse_iso(record.get("expires_at")),
    )
