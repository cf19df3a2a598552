from decimal import Decimal
from typing import List
from pydantic import BaseModel


class TrayBillResponse(BaseModel):
    tray_id: str
    number: str
    size: str
    subscription_type: str
    subtotal: Decimal
    total_discount: Decimal
    urgent_amount: Decimal
    subscription_discount: Decimal
    total: Decimal
    is_cash: bool
    is_card: bool
    item_count: int
    total_weight: Decimal

    class Config:
        from_attributes = True


class ServiceFileBillResponse(BaseModel):
    service_file_id: str
    lead_id: str
    trays: List[TrayBillResponse]
    all_sheets_total: Decimal
    payment_cash: bool
    payment_card: bool

    class Config:
        from_attributes = True


class LeadBillResponse(BaseModel):
    lead_id: str
    service_files: List[ServiceFileBillResponse]
    total: Decimal

    class Config:
        from_attributes = True
