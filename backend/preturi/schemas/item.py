from decimal import Decimal
from typing import Optional, List
from pydantic import BaseModel, Field


class SerialNumberSchema(BaseModel):
    serial: str
    garantie: bool = False


class BrandSerialGroupSchema(BaseModel):
    brand: str = ""
    serial_numbers: List[SerialNumberSchema] = []
    qty: int = Field(default=1, ge=1)


class InstrumentAdd(BaseModel):
    instrument_id: str
    qty: int = Field(default=1, ge=1)
    brand: Optional[str] = None
    serial_number: Optional[str] = None
    garantie: bool = False
    brand_groups: Optional[List[BrandSerialGroupSchema]] = None


class ServiceAdd(BaseModel):
    service_id: str
    qty: int = Field(default=1, ge=1)
    discount_pct: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    urgent: bool = False
    brand: Optional[str] = None
    serial_number: Optional[str] = None
    garantie: bool = False
    brand_groups: Optional[List[BrandSerialGroupSchema]] = None


class PartAdd(BaseModel):
    part_id: str
    instrument_id: str
    qty: int = Field(default=1, ge=1)
    discount_pct: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    urgent: bool = False
    # Пусто: цена из справочника
    price: Optional[Decimal] = Field(default=None, ge=0)


class ItemUpdate(BaseModel):
    """Передаются только изменяемые поля."""
    qty: Optional[int] = Field(default=None, ge=1)
    discount_pct: Optional[Decimal] = Field(default=None, ge=0, le=100)
    urgent: Optional[bool] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    technician_id: Optional[str] = None
    brand: Optional[str] = None
    serial_number: Optional[str] = None
    garantie: Optional[bool] = None
    brand_groups: Optional[List[BrandSerialGroupSchema]] = None


class ItemResponse(BaseModel):
    id: str
    tray_id: str
    item_type: Optional[str] = None
    instrument_id: Optional[str] = None
    service_id: Optional[str] = None
    part_id: Optional[str] = None
    name_snapshot: Optional[str] = None
    qty: int
    price: Optional[Decimal] = None
    discount_pct: Optional[Decimal] = None
    urgent: bool = False
    technician_id: Optional[str] = None
    department_id: Optional[str] = None
    pipeline_id: Optional[str] = None
    stage_id: Optional[str] = None
    brand: Optional[str] = None
    serial_number: Optional[str] = None
    garantie: bool = False
    brand_groups: List[BrandSerialGroupSchema] = []
    line_total: Decimal = Decimal("0")


class TotalsResponse(BaseModel):
    subtotal: Decimal
    total_discount: Decimal
    urgent_amount: Decimal
    subscription_discount: Decimal
    total: Decimal


class DisplayRowResponse(BaseModel):
    key: str
    item_ids: List[str]
    item: ItemResponse


class InstrumentGroupResponse(BaseModel):
    instrument_id: str
    instrument_name: str
    item_ids: List[str]
    first_item_id: str


class ServiceResponse(BaseModel):
    id: str
    name: str
    price: Decimal
    instrument_id: Optional[str] = None

    class Config:
        from_attributes = True
