"""
Доменные записи движка: fișe, tăvițe, позиции и справочники.

Позиция tăviță задана размеченным вариантом вместо строки item_type с null:
InstrumentPlaceholder (только инструмент, без услуги), ServiceLine, PartLine.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import ClassVar, Optional, Union

from preturi.core.errors import ValidationError


class ItemType(str, enum.Enum):
    SERVICE = "service"
    PART = "part"


class SubscriptionType(str, enum.Enum):
    NONE = ""
    SERVICES = "services"
    PARTS = "parts"
    BOTH = "both"

    @property
    def covers_services(self) -> bool:
        return self in (SubscriptionType.SERVICES, SubscriptionType.BOTH)

    @property
    def covers_parts(self) -> bool:
        return self in (SubscriptionType.PARTS, SubscriptionType.BOTH)

    @classmethod
    def parse(cls, value: Optional[str]) -> "SubscriptionType":
        if value is None:
            return cls.NONE
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValidationError("subscription_invalid", f"Неизвестный тип абонемента: {value}")


@dataclass
class SerialNumber:
    serial: str
    garantie: bool = False


@dataclass
class BrandSerialGroup:
    """Бренд и серийные номера единиц одной позиции (ремонт, учёт гарантии)."""
    brand: str = ""
    serial_numbers: list[SerialNumber] = field(default_factory=list)
    qty: int = 1


@dataclass
class InstrumentPlaceholder:
    """Инструмент без услуги: не входит в суммы, но участвует в весе и группировке."""
    item_type: ClassVar[Optional[ItemType]] = None

    id: str = ""
    tray_id: str = ""
    instrument_id: Optional[str] = None
    qty: int = 1
    technician_id: Optional[str] = None
    department_id: Optional[str] = None
    pipeline_id: Optional[str] = None
    stage_id: Optional[str] = None
    brand: Optional[str] = None
    serial_number: Optional[str] = None
    garantie: bool = False
    brand_groups: list[BrandSerialGroup] = field(default_factory=list)
    version: int = 0
    created_at: Optional[datetime] = None


@dataclass
class PricedLine(InstrumentPlaceholder):
    name_snapshot: str = ""
    price: Decimal = Decimal("0")
    discount_pct: Decimal = Decimal("0")
    urgent: bool = False


@dataclass
class ServiceLine(PricedLine):
    item_type: ClassVar[Optional[ItemType]] = ItemType.SERVICE

    service_id: Optional[str] = None


@dataclass
class PartLine(PricedLine):
    item_type: ClassVar[Optional[ItemType]] = ItemType.PART

    part_id: Optional[str] = None


TrayItem = Union[InstrumentPlaceholder, ServiceLine, PartLine]


def is_priced(item: TrayItem) -> bool:
    return isinstance(item, PricedLine)


@dataclass
class Tray:
    id: str
    service_file_id: str
    number: str = ""
    size: str = "m"
    office_direct: bool = False
    curier_trimis: bool = False
    is_cash: bool = False
    is_card: bool = False
    subscription_type: SubscriptionType = SubscriptionType.NONE
    version: int = 0
    created_at: Optional[datetime] = None

    @property
    def locked(self) -> bool:
        return self.office_direct or self.curier_trimis

    @property
    def unassigned(self) -> bool:
        """Tăviță без номера: временное место инструментов до распределения."""
        return not (self.number or "").strip()


@dataclass
class ServiceFile:
    id: str
    lead_id: str
    number: str = ""
    stage: str = ""
    details: str = ""
    payment_cash: bool = False
    payment_card: bool = False
    version: int = 0
    created_at: Optional[datetime] = None


@dataclass
class Instrument:
    id: str
    name: str
    department_id: Optional[str] = None
    weight: Decimal = Decimal("0")
    pipeline: Optional[str] = None


@dataclass
class Service:
    id: str
    name: str
    price: Decimal = Decimal("0")
    instrument_id: Optional[str] = None


@dataclass
class Part:
    id: str
    name: str
    price: Decimal = Decimal("0")


@dataclass
class Department:
    id: str
    name: str


@dataclass
class Stage:
    id: str
    pipeline_id: str
    name: str
    position: int = 0


@dataclass
class Pipeline:
    id: str
    name: str
    department_id: Optional[str] = None
    stages: list[Stage] = field(default_factory=list)


class PlacementKind(str, enum.Enum):
    TRAY = "tray"
    SERVICE_FILE = "service_file"


@dataclass
class Placement:
    """Карточка tăviță или fișă в stage конкретного pipeline."""
    kind: PlacementKind
    ref_id: str
    pipeline_id: str
    stage_id: str
    id: str = ""
    version: int = 0


def normalize_name(name: Optional[str]) -> str:
    return (name or "").strip().lower()


@dataclass
class Catalog:
    """Справочники, загруженные на время одной операции."""
    instruments: dict[str, Instrument] = field(default_factory=dict)
    services: dict[str, Service] = field(default_factory=dict)
    parts: dict[str, Part] = field(default_factory=dict)
    departments: dict[str, Department] = field(default_factory=dict)
    pipelines: dict[str, Pipeline] = field(default_factory=dict)

    def pipeline_by_name(self, name: str) -> Optional[Pipeline]:
        key = normalize_name(name)
        for pipeline in self.pipelines.values():
            if normalize_name(pipeline.name) == key:
                return pipeline
        return None

    def resolve_pipeline(self, instrument: Instrument) -> Optional[Pipeline]:
        """Тег pipeline инструмента (id, затем имя без учёта регистра), иначе департамент."""
        if instrument.pipeline:
            found = self.pipelines.get(instrument.pipeline) or self.pipeline_by_name(instrument.pipeline)
            if found:
                return found
        if instrument.department_id:
            for pipeline in self.pipelines.values():
                if pipeline.department_id == instrument.department_id:
                    return pipeline
            department = self.departments.get(instrument.department_id)
            if department:
                return self.pipeline_by_name(department.name)
        return None
