from decimal import Decimal
from typing import Optional, List
from pydantic import BaseModel, Field

from preturi.schemas.item import DisplayRowResponse, InstrumentGroupResponse, ItemResponse, TotalsResponse
from preturi.schemas.tray import TrayResponse


class TrayItemsResponse(BaseModel):
    """Содержимое tăviță: позиции, строки отображения, группы инструментов, итоги."""
    tray: TrayResponse
    items: List[ItemResponse]
    rows: List[DisplayRowResponse]
    instruments: List[InstrumentGroupResponse]
    totals: TotalsResponse
    total_weight: Decimal
    unresolved_item_ids: List[str] = []


class NewTrayRequest(BaseModel):
    number: str = Field(..., min_length=1, max_length=32)
    size: Optional[str] = None


class MoveInstrumentRequest(BaseModel):
    instrument_id: str
    # либо существующая tăviță той же fișă, либо новая
    target_tray_id: Optional[str] = None
    new_tray: Optional[NewTrayRequest] = None
    # состав группы, который видел пользователь; при расхождении перенос отклоняется
    expected_item_ids: Optional[List[str]] = None


class MoveInstrumentResponse(BaseModel):
    source_tray_id: str
    target_tray: TrayResponse
    moved_item_ids: List[str]
    source_deleted: bool


class PlacementResponse(BaseModel):
    kind: str
    ref_id: str
    pipeline_id: str
    stage_id: str


class DispatchResponse(BaseModel):
    service_file_id: str
    tray_ids: List[str]
    tray_numbers: List[str]
    item_count: int
    pipelines: List[str]
    placements: List[PlacementResponse]


class StageTransitionRequest(BaseModel):
    action: str = Field(..., description="in_lucru | finalizare | astept_piese | in_asteptare")
    technician_id: Optional[str] = None


class StageTransitionResponse(BaseModel):
    tray_id: str
    instrument_id: str
    pipeline_id: str
    stage_id: str
    stage_name: str
    item_ids: List[str]
