from __future__ import annotations

import enum

from sqlalchemy import Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin


class MirrorMode(str, enum.Enum):
    created_invoice = "created_invoice"
    imported_invoice = "imported_invoice"
    unmatched = "unmatched"
    failed = "failed"


class ExternalPaymentMirror(Base, TimestampMixin):
    __tablename__ = "external_payment_mirrors"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    charge_id: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    mode: Mapped[MirrorMode] = mapped_column(Enum(MirrorMode, name="mirror_mode"), nullable=False)
    matched_patient_id: Mapped[int | None] = mapped_column(
        ForeignKey("patients.id"), nullable=True, index=True
    )
    created_invoice_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), default="usd", nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
