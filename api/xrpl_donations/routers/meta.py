from fastapi import APIRouter, Depends

from ..core.config import XRPL_NETWORK
from ..core.services import Services, get_services
from ..models import Health

router = APIRouter()


@router.get("/healthz", tags=["meta"], response_model=Health)
def healthz(services: Services = Depends(get_services)):
    cached = services.rate_cache.get()
    return Health(
        ok=True,
        network=XRPL_NETWORK,
        details={
            "rate_cached": cached is not None,
            "rewards_enabled": services.donations.issuer_wallet is not None,
        },
    )
