from fastapi import APIRouter, Depends

from ..core.services import Services, get_services
from ..models import PriceQuoteOut
from .donations import quote_out

router = APIRouter()


@router.get("/projects/{project_id}/price", tags=["projects"], response_model=PriceQuoteOut)
async def get_current_price(project_id: str, services: Services = Depends(get_services)):
    return quote_out(await services.projects.get_current_price(project_id))
