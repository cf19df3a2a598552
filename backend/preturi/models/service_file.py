import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy import String, Boolean, Integer, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from preturi.core.database import Base


class ServiceFile(Base):
    __tablename__ = "service_files"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    lead_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    number: Mapped[str] = mapped_column(String(32), default="", nullable=False)
    stage: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    # Инструкции клиента; старые записи: JSON {text, paymentCash, paymentCard}
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payment_cash: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    payment_card: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    trays = relationship("Tray", back_populates="service_file")
