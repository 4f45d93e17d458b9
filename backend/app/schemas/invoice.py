from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.invoice import InvoiceStatus, PaymentMethod, PaymentStatus


class InvoiceItemCreate(BaseModel):
    description: str = Field(min_length=1, max_length=255)
    quantity: int = Field(default=1, ge=1)
    unit_price_cents: int = Field(ge=0)
    service_type: Optional[str] = None


class InvoiceItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    description: str
    service_type: Optional[str] = None
    quantity: int
    unit_price_cents: int
    amount_cents: int


class InvoicePaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount_cents: int
    amount_refunded_cents: int
    currency: str
    payment_method: PaymentMethod
    status: PaymentStatus
    stripe_charge_id: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    paid_at: datetime
    notes: Optional[str] = None


class InvoiceCreate(BaseModel):
    patient_id: int
    due_date: Optional[date] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    items: list[InvoiceItemCreate] = []


class ManualPaymentCreate(BaseModel):
    amount_cents: Optional[int] = Field(default=None, ge=1)
    payment_method: PaymentMethod = PaymentMethod.manual
    paid_at: Optional[datetime] = None
    notes: Optional[str] = None


class InvoiceSummaryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_id: int
    invoice_number: str
    stripe_invoice_id: Optional[str] = None
    description: Optional[str] = None
    invoice_date: date
    due_date: Optional[date] = None
    status: InvoiceStatus
    currency: str
    subtotal_cents: int
    tax_cents: int
    total_cents: int
    amount_paid_cents: int
    amount_refunded_cents: int
    balance_cents: int
    paid_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class InvoiceOut(InvoiceSummaryOut):
    notes: Optional[str] = None
    created_by_user_id: Optional[int] = None
    updated_by_user_id: Optional[int] = None
    items: list[InvoiceItemOut]
    payments: list[InvoicePaymentOut]
