from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query

from preturi.api.deps import get_engine, get_view
from preturi.core.permissions import ViewContext
from preturi.entities import BrandSerialGroup, SerialNumber, Tray, TrayItem, is_priced
from preturi.schemas.item import (
    BrandSerialGroupSchema,
    DisplayRowResponse,
    InstrumentAdd,
    InstrumentGroupResponse,
    ItemResponse,
    PartAdd,
    SerialNumberSchema,
    ServiceAdd,
    ServiceResponse,
    TotalsResponse,
)
from preturi.schemas.routing import (
    MoveInstrumentRequest,
    MoveInstrumentResponse,
    StageTransitionRequest,
    StageTransitionResponse,
    TrayItemsResponse,
)
from preturi.schemas.tray import (
    LockToggle,
    PaymentUpdate,
    SubscriptionUpdate,
    TrayAvailabilityResponse,
    TrayResponse,
    TrayUpdate,
)
from preturi.services.engine import PreturiEngine
from preturi.services.pricing import line_total
from preturi.services.routing import NewTray
from preturi.services.tray_service import normalize_number, normalize_size

router = APIRouter(prefix="/trays", tags=["trays"])


def tray_response(tray: Tray) -> TrayResponse:
    return TrayResponse(
        id=tray.id,
        service_file_id=tray.service_file_id,
        number=tray.number,
        size=tray.size,
        office_direct=tray.office_direct,
        curier_trimis=tray.curier_trimis,
        is_cash=tray.is_cash,
        is_card=tray.is_card,
        subscription_type=tray.subscription_type.value,
        locked=tray.locked,
        unassigned=tray.unassigned,
    )


def item_response(item: TrayItem, engine: Optional[PreturiEngine] = None) -> ItemResponse:
    priced = is_priced(item)
    return ItemResponse(
        id=item.id,
        tray_id=item.tray_id,
        item_type=item.item_type.value if item.item_type else None,
        instrument_id=item.instrument_id,
        service_id=getattr(item, "service_id", None),
        part_id=getattr(item, "part_id", None),
        name_snapshot=item.name_snapshot if priced else None,
        qty=item.qty,
        price=item.price if priced else None,
        discount_pct=item.discount_pct if priced else None,
        urgent=item.urgent if priced else False,
        technician_id=item.technician_id,
        department_id=item.department_id,
        pipeline_id=item.pipeline_id,
        stage_id=item.stage_id,
        brand=item.brand,
        serial_number=item.serial_number,
        garantie=item.garantie,
        brand_groups=[
            BrandSerialGroupSchema(
                brand=g.brand,
                serial_numbers=[SerialNumberSchema(serial=s.serial, garantie=s.garantie) for s in g.serial_numbers],
                qty=g.qty,
            )
            for g in item.brand_groups
        ],
        line_total=line_total(item, engine.ctx.rates if engine else None),
    )


def brand_groups_from_schema(groups: Optional[list[BrandSerialGroupSchema]]) -> Optional[list[BrandSerialGroup]]:
    if groups is None:
        return None
    return [
        BrandSerialGroup(
            brand=g.brand.strip(),
            serial_numbers=[SerialNumber(s.serial.strip(), s.garantie) for s in g.serial_numbers if s.serial.strip()],
            qty=g.qty,
        )
        for g in groups
    ]


@router.get("/availability", response_model=TrayAvailabilityResponse)
async def tray_availability(
    number: str = Query(..., min_length=1),
    size: Optional[str] = Query(default=None),
    engine: PreturiEngine = Depends(get_engine),
):
    """Свободна ли пара номер/размер (уникальна во всей системе)."""
    available = await engine.is_tray_available(number, size)
    return TrayAvailabilityResponse(number=normalize_number(number), size=normalize_size(size),
                                    available=available)


@router.patch("/{tray_id}", response_model=TrayResponse)
async def edit_tray(
    tray_id: str,
    data: TrayUpdate,
    view: ViewContext = Depends(get_view),
    engine: PreturiEngine = Depends(get_engine),
):
    tray = await engine.edit_tray(tray_id, data.number, data.size, view)
    return tray_response(tray)


@router.delete("/{tray_id}")
async def delete_tray(
    tray_id: str,
    view: ViewContext = Depends(get_view),
    engine: PreturiEngine = Depends(get_engine),
):
    await engine.delete_tray(tray_id, view)
    return {"ok": True}


@router.post("/{tray_id}/lock", response_model=TrayResponse)
async def toggle_lock(
    tray_id: str,
    data: LockToggle,
    view: ViewContext = Depends(get_view),
    engine: PreturiEngine = Depends(get_engine),
):
    tray = await engine.toggle_lock(tray_id, data.flag, data.value, view)
    return tray_response(tray)


@router.patch("/{tray_id}/payment", response_model=TrayResponse)
async def set_payment(
    tray_id: str,
    data: PaymentUpdate,
    engine: PreturiEngine = Depends(get_engine),
):
    tray = await engine.set_payment(tray_id, data.is_cash, data.is_card)
    return tray_response(tray)


@router.patch("/{tray_id}/subscription", response_model=TrayResponse)
async def set_subscription(
    tray_id: str,
    data: SubscriptionUpdate,
    view: ViewContext = Depends(get_view),
    engine: PreturiEngine = Depends(get_engine),
):
    tray = await engine.set_subscription(tray_id, data.subscription_type, view)
    return tray_response(tray)


@router.get("/{tray_id}/items", response_model=TrayItemsResponse)
async def tray_items(tray_id: str, engine: PreturiEngine = Depends(get_engine)):
    """Позиции, сгруппированные строки, группы инструментов, итоги и вес."""
    content = await engine.tray_view(tray_id)
    totals = content.totals
    return TrayItemsResponse(
        tray=tray_response(content.tray),
        items=[item_response(it, engine) for it in content.items],
        rows=[
            DisplayRowResponse(key=row.key, item_ids=list(row.item_ids), item=item_response(row.item, engine))
            for row in content.rows
        ],
        instruments=[
            InstrumentGroupResponse(
                instrument_id=g.instrument.id,
                instrument_name=g.instrument.name,
                item_ids=g.item_ids,
                first_item_id=g.representative.id,
            )
            for g in content.groups
        ],
        totals=TotalsResponse(
            subtotal=totals.subtotal,
            total_discount=totals.total_discount,
            urgent_amount=totals.urgent_amount,
            subscription_discount=totals.subscription_discount,
            total=totals.total,
        ),
        total_weight=content.total_weight,
        unresolved_item_ids=content.unresolved_item_ids,
    )


@router.get("/{tray_id}/instruments/{instrument_id}/available-services", response_model=list[ServiceResponse])
async def available_services(tray_id: str, instrument_id: str, engine: PreturiEngine = Depends(get_engine)):
    services = await engine.available_services(tray_id, instrument_id)
    return [ServiceResponse.model_validate(s) for s in services]


@router.post("/{tray_id}/instruments", response_model=ItemResponse)
async def add_instrument(
    tray_id: str,
    data: InstrumentAdd,
    view: ViewContext = Depends(get_view),
    engine: PreturiEngine = Depends(get_engine),
):
    item = await engine.add_instrument(
        tray_id, data.instrument_id, data.qty, data.brand, data.serial_number, data.garantie,
        brand_groups_from_schema(data.brand_groups), view,
    )
    return item_response(item, engine)


@router.post("/{tray_id}/services", response_model=ItemResponse)
async def add_service(
    tray_id: str,
    data: ServiceAdd,
    view: ViewContext = Depends(get_view),
    engine: PreturiEngine = Depends(get_engine),
):
    item = await engine.add_service(
        tray_id, data.service_id, data.qty, data.discount_pct, data.urgent, data.brand,
        data.serial_number, data.garantie, brand_groups_from_schema(data.brand_groups), view,
    )
    return item_response(item, engine)


@router.post("/{tray_id}/parts", response_model=ItemResponse)
async def add_part(
    tray_id: str,
    data: PartAdd,
    view: ViewContext = Depends(get_view),
    engine: PreturiEngine = Depends(get_engine),
):
    item = await engine.add_part(
        tray_id, data.part_id, data.instrument_id, data.qty, data.discount_pct, data.urgent, data.price, view,
    )
    return item_response(item, engine)


@router.post("/{tray_id}/move-instrument", response_model=MoveInstrumentResponse)
async def move_instrument(
    tray_id: str,
    data: MoveInstrumentRequest,
    view: ViewContext = Depends(get_view),
    engine: PreturiEngine = Depends(get_engine),
):
    new_tray = NewTray(number=data.new_tray.number, size=data.new_tray.size) if data.new_tray else None
    result = await engine.move_instrument(
        tray_id, data.instrument_id, data.target_tray_id, new_tray, data.expected_item_ids, view,
    )
    return MoveInstrumentResponse(
        source_tray_id=result.source_tray_id,
        target_tray=tray_response(result.target_tray),
        moved_item_ids=result.moved_item_ids,
        source_deleted=result.source_deleted,
    )


@router.post("/{tray_id}/instruments/{instrument_id}/stage", response_model=StageTransitionResponse)
async def transition_stage(
    tray_id: str,
    instrument_id: str,
    data: StageTransitionRequest,
    view: ViewContext = Depends(get_view),
    engine: PreturiEngine = Depends(get_engine),
):
    result = await engine.transition_stage(tray_id, instrument_id, data.action, data.technician_id, view)
    return StageTransitionResponse(
        tray_id=result.tray_id,
        instrument_id=result.instrument_id,
        pipeline_id=result.pipeline_id,
        stage_id=result.stage.id,
        stage_name=result.stage.name,
        item_ids=result.item_ids,
    )
