from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

LinkStatusValue = Literal["created", "pending", "completed", "cancelled", "expired"]
DonationStatusValue = Literal["created", "awaiting_signature", "settled", "expired", "failed"]


class SigningRefs(BaseModel):
    payload_id: str
    qr_payload: str
    qr_png: Optional[str] = None
    websocket_url: Optional[str] = None


class LinkHandle(BaseModel):
    request_id: str
    signing: SigningRefs
    status: LinkStatusValue
    expires_at: Optional[datetime] = None


class LinkStatus(BaseModel):
    payload_id: str
    status: LinkStatusValue
    address: Optional[str] = None
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class DonationCreate(BaseModel):
    project_id: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0, examples=[25.5])  # XRP
    include_quote: bool = True


class TokenPriceOut(BaseModel):
    rlusd: float
    xrp: float
    timestamp: datetime


class PriceQuoteOut(BaseModel):
    project_id: str
    price: TokenPriceOut
    rate: float
    rate_source: str
    rate_timestamp: datetime
    quality_score: float
    total_donations_xrp: float


class EligibilityOut(BaseModel):
    has_trustline: bool
    xrp_balance: float
    token_balance: float
    can_donate: bool


class DonationStatusOut(BaseModel):
    id: str
    project_id: str
    amount: float
    destination_tag: int
    status: DonationStatusValue
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    provider_payload_id: Optional[str] = None
    settled_tx_hash: Optional[str] = None
    donor_address: Optional[str] = None
    failure_reason: Optional[str] = None
    check_id: Optional[str] = None
    reward_status: Optional[str] = None


class DonationHandleOut(BaseModel):
    request: DonationStatusOut
    signing: SigningRefs
    quote: Optional[PriceQuoteOut] = None
    eligibility: Optional[EligibilityOut] = None
    warnings: List[str] = Field(default_factory=list)


class CallbackAck(BaseModel):
    ok: bool = True
    payload_id: str
    kind: str
    status: str


class Health(BaseModel):
    ok: bool
    network: str
    details: Dict[str, Any] = Field(default_factory=dict)


class TrustlineCreate(BaseModel):
    project_id: str = Field(..., min_length=1)
    donor_address: str = Field(..., min_length=25, max_length=35)


class TrustlineHandle(BaseModel):
    request_id: str
    project_id: str
    token_code: str
    issuer_address: str
    signing: SigningRefs
    status: LinkStatusValue
    expires_at: Optional[datetime] = None


class TrustlineStatus(BaseModel):
    payload_id: str
    status: LinkStatusValue
    tx_hash: Optional[str] = None
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class WalletBalanceOut(BaseModel):
    address: str
    balance_drops: int
    balance_xrp: float
    balance_rlusd: Optional[float] = None
