from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, TimestampMixin


class SoapNoteStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class SoapNote(Base, TimestampMixin):
    __tablename__ = "soap_notes"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("patients.id"), nullable=False, index=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    original_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[SoapNoteStatus] = mapped_column(
        Enum(SoapNoteStatus, name="soap_note_status"),
        nullable=False,
        default=SoapNoteStatus.pending,
        index=True,
    )
    created_by: Mapped[str] = mapped_column(String(120), default="BECCA AI", nullable=False)
    approved_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    approved_by_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    approved_by_credentials: Mapped[str | None] = mapped_column(String(64), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    edit_history: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    ai_model: Mapped[str | None] = mapped_column(String(64), nullable=True)
    prompt_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    completion_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)

    patient = relationship("Patient", back_populates="soap_notes", lazy="joined")
    approver = relationship("User", foreign_keys=[approved_by], lazy="joined")
