from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class ServiceFileCreate(BaseModel):
    lead_id: str
    number: str = ""
    details: str = ""


class ServiceFileResponse(BaseModel):
    id: str
    lead_id: str
    number: str
    details: str
    payment_cash: bool
    payment_card: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DetailsUpdate(BaseModel):
    """Инструкции клиента (текст)."""
    text: str = ""


class TrayCreate(BaseModel):
    number: str = Field(..., min_length=1, max_length=32)
    size: Optional[str] = None


class TrayUpdate(BaseModel):
    number: Optional[str] = Field(default=None, min_length=1, max_length=32)
    size: Optional[str] = None


class LockToggle(BaseModel):
    """office_direct или curier_trimis; включение одного выключает другой."""
    flag: str
    value: bool


class PaymentUpdate(BaseModel):
    is_cash: Optional[bool] = None
    is_card: Optional[bool] = None


class SubscriptionUpdate(BaseModel):
    subscription_type: Optional[str] = Field(default="", description="'', services, parts, both")


class TrayResponse(BaseModel):
    id: str
    service_file_id: str
    number: str
    size: str
    office_direct: bool
    curier_trimis: bool
    is_cash: bool
    is_card: bool
    subscription_type: str
    locked: bool
    unassigned: bool


class TrayAvailabilityResponse(BaseModel):
    number: str
    size: str
    available: bool
