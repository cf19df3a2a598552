import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional
from sqlalchemy import String, Boolean, Integer, Numeric, DateTime, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from preturi.core.database import Base, JsonColumn


class TrayItem(Base):
    __tablename__ = "tray_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tray_id: Mapped[str] = mapped_column(ForeignKey("trays.id"), index=True, nullable=False)
    # NULL: инструмент без услуги; "service" | "part"
    item_type: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    instrument_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    service_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    part_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    technician_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    department_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    pipeline_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    stage_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    name_snapshot: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    qty: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    discount_pct: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    urgent: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    brand: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    serial_number: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    garantie: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    brand_groups: Mapped[Optional[list]] = mapped_column(JsonColumn, nullable=True)
    # Старый формат: метаданные позиции JSON-ом в тексте, только чтение
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    tray = relationship("Tray", back_populates="items")
