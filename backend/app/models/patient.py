from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import JSON, Boolean, Date, DateTime, Float, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import AuditMixin, Base, SoftDeleteMixin


class PatientStatus(str, enum.Enum):
    pending = "pending"
    qualified = "qualified"
    active = "active"
    inactive = "inactive"
    rejected = "rejected"
    archived = "archived"


class Patient(Base, AuditMixin, SoftDeleteMixin):
    __tablename__ = "patients"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    # Display code such as P0001, assigned once the row has an id.
    patient_id: Mapped[str | None] = mapped_column(String(16), unique=True, index=True, nullable=True)
    first_name: Mapped[str] = mapped_column(String(120), default="", nullable=False)
    last_name: Mapped[str] = mapped_column(String(120), default="", nullable=False)
    email: Mapped[str] = mapped_column(String(320), unique=True, index=True, nullable=False)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    gender: Mapped[str | None] = mapped_column(String(32), nullable=True)
    language: Mapped[str] = mapped_column(String(8), default="en", nullable=False)

    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    address_house: Mapped[str | None] = mapped_column(String(50), nullable=True)
    address_street: Mapped[str | None] = mapped_column(String(200), nullable=True)
    apartment_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    state: Mapped[str | None] = mapped_column(String(64), nullable=True)
    zip: Mapped[str | None] = mapped_column(String(20), nullable=True)

    height_inches: Mapped[int | None] = mapped_column(nullable=True)
    weight_lbs: Mapped[float | None] = mapped_column(Float, nullable=True)
    target_weight_lbs: Mapped[float | None] = mapped_column(Float, nullable=True)
    bmi: Mapped[float | None] = mapped_column(Float, nullable=True)

    form_type: Mapped[str | None] = mapped_column(String(120), nullable=True)
    heyflow_submission_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    consent_treatment: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    consent_telehealth: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    consent_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    membership_hashtags: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    assigned_rep: Mapped[str | None] = mapped_column(String(120), nullable=True)
    rep_form_submission: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    stripe_customer_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, index=True, nullable=True
    )
    # Stored as text so rows carried over from older schemas (e.g. "client")
    # can still be loaded and normalised through the status service.
    status: Mapped[str] = mapped_column(
        String(32), default=PatientStatus.pending.value, nullable=False, index=True
    )
    reviewed_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    reviewed_by = relationship("User", foreign_keys=[reviewed_by_user_id], lazy="joined")
    weight_loss_intake = relationship(
        "WeightLossIntake",
        back_populates="patient",
        uselist=False,
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    invoices = relationship("Invoice", back_populates="patient")
    soap_notes = relationship("SoapNote", back_populates="patient")
    subscriptions = relationship("StripeSubscription", back_populates="patient")

    @property
    def full_name(self) -> str:
        return " ".join(part for part in [self.first_name, self.last_name] if part)


class WeightLossIntake(Base, AuditMixin):
    __tablename__ = "weight_loss_intakes"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    patient_id: Mapped[int] = mapped_column(
        ForeignKey("patients.id"), unique=True, nullable=False, index=True
    )
    target_weight_lbs: Mapped[float | None] = mapped_column(Float, nullable=True)
    weight_loss_timeline: Mapped[str | None] = mapped_column(String(120), nullable=True)
    previous_weight_loss_attempts: Mapped[str | None] = mapped_column(Text, nullable=True)
    exercise_frequency: Mapped[str | None] = mapped_column(String(120), nullable=True)
    diet_restrictions: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    diabetes_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    thyroid_condition: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    heart_conditions: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    patient = relationship("Patient", back_populates="weight_loss_intake")
