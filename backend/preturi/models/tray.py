import uuid
from datetime import datetime
from sqlalchemy import String, Boolean, Integer, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from preturi.core.database import Base


class Tray(Base):
    __tablename__ = "trays"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    service_file_id: Mapped[str] = mapped_column(
        ForeignKey("service_files.id"), index=True, nullable=False
    )
    # Пустой номер: tăviță «неназначенная» (приёмка до распределения)
    number: Mapped[str] = mapped_column(String(32), default="", nullable=False, index=True)
    size: Mapped[str] = mapped_column(String(8), default="m", nullable=False)
    office_direct: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    curier_trimis: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_cash: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_card: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    subscription_type: Mapped[str] = mapped_column(String(16), default="", nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    service_file = relationship("ServiceFile", back_populates="trays")
    items = relationship("TrayItem", back_populates="tray")
