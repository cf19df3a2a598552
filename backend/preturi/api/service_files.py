from fastapi import APIRouter, Depends

from preturi.api.deps import get_engine, get_view
from preturi.api.trays import tray_response
from preturi.core.permissions import ViewContext
from preturi.entities import ServiceFile
from preturi.schemas.billing import ServiceFileBillResponse
from preturi.schemas.routing import DispatchResponse, PlacementResponse
from preturi.schemas.tray import (
    DetailsUpdate,
    ServiceFileCreate,
    ServiceFileResponse,
    TrayCreate,
    TrayResponse,
)
from preturi.services.engine import PreturiEngine

router = APIRouter(prefix="/service-files", tags=["service-files"])


def _service_file_response(service_file: ServiceFile) -> ServiceFileResponse:
    return ServiceFileResponse.model_validate(service_file)


@router.post("", response_model=ServiceFileResponse)
async def create_service_file(data: ServiceFileCreate, engine: PreturiEngine = Depends(get_engine)):
    service_file = await engine.create_service_file(data.lead_id, data.number, data.details)
    return _service_file_response(service_file)


@router.patch("/{service_file_id}/details", response_model=ServiceFileResponse)
async def update_details(
    service_file_id: str,
    data: DetailsUpdate,
    engine: PreturiEngine = Depends(get_engine),
):
    service_file = await engine.update_details(service_file_id, data.text)
    return _service_file_response(service_file)


@router.get("/{service_file_id}/trays", response_model=list[TrayResponse])
async def list_trays(service_file_id: str, engine: PreturiEngine = Depends(get_engine)):
    return [tray_response(t) for t in await engine.list_trays(service_file_id)]


@router.post("/{service_file_id}/trays", response_model=TrayResponse)
async def create_tray(service_file_id: str, data: TrayCreate, engine: PreturiEngine = Depends(get_engine)):
    tray = await engine.create_tray(service_file_id, data.number, data.size)
    return tray_response(tray)


@router.post("/{service_file_id}/trays/unassigned", response_model=TrayResponse)
async def create_unassigned_tray(service_file_id: str, engine: PreturiEngine = Depends(get_engine)):
    """Tăviță без номера для приёмки; одна на fișă."""
    tray = await engine.create_unassigned_tray(service_file_id)
    return tray_response(tray)


@router.post("/{service_file_id}/dispatch", response_model=DispatchResponse)
async def dispatch(
    service_file_id: str,
    view: ViewContext = Depends(get_view),
    engine: PreturiEngine = Depends(get_engine),
):
    result = await engine.dispatch(service_file_id, view)
    return DispatchResponse(
        service_file_id=result.service_file_id,
        tray_ids=result.tray_ids,
        tray_numbers=result.tray_numbers,
        item_count=result.item_count,
        pipelines=result.pipelines,
        placements=[
            PlacementResponse(kind=p.kind.value, ref_id=p.ref_id, pipeline_id=p.pipeline_id, stage_id=p.stage_id)
            for p in result.placements
        ],
    )


@router.get("/{service_file_id}/billing", response_model=ServiceFileBillResponse)
async def service_file_billing(service_file_id: str, engine: PreturiEngine = Depends(get_engine)):
    bill = await engine.bill_service_file(service_file_id)
    return ServiceFileBillResponse.model_validate(bill)
