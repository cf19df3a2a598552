from fastapi import APIRouter, Depends

from preturi.api.deps import get_engine
from preturi.schemas.billing import LeadBillResponse
from preturi.services.engine import PreturiEngine

router = APIRouter(prefix="/leads", tags=["leads"])


@router.get("/{lead_id}/billing", response_model=LeadBillResponse)
async def lead_billing(lead_id: str, engine: PreturiEngine = Depends(get_engine)):
    """Сумма по всем fișe lead-а."""
    bill = await engine.bill_lead(lead_id)
    return LeadBillResponse.model_validate(bill)
