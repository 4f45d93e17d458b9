from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy.orm import Session

from app.models.invoice import (
    Invoice,
    InvoiceItem,
    InvoicePayment,
    InvoiceStatus,
    PaymentMethod,
    PaymentStatus,
)

INVOICE_SEQUENCE_START = 1000


def format_invoice_number(invoice_id: int, year: int | None = None) -> str:
    year = year or date.today().year
    return f"INV-{year}-{INVOICE_SEQUENCE_START + invoice_id:05d}"


def recalculate_totals(invoice: Invoice) -> None:
    for item in invoice.items:
        item.amount_cents = item.quantity * item.unit_price_cents
    invoice.subtotal_cents = sum(item.amount_cents for item in invoice.items)
    invoice.total_cents = invoice.subtotal_cents + (invoice.tax_cents or 0)


def update_status_from_payments(invoice: Invoice) -> None:
    if invoice.status in {InvoiceStatus.void, InvoiceStatus.draft}:
        return
    refunded = invoice.amount_refunded_cents or 0
    paid = invoice.amount_paid_cents
    if paid > 0 and refunded >= paid:
        invoice.status = InvoiceStatus.refunded
        return
    if invoice.total_cents > 0 and paid >= invoice.total_cents:
        invoice.status = InvoiceStatus.paid
        if invoice.paid_at is None:
            invoice.paid_at = datetime.now(timezone.utc)
    elif invoice.status == InvoiceStatus.paid:
        invoice.status = InvoiceStatus.open
        invoice.paid_at = None


def create_invoice(
    db: Session,
    *,
    patient_id: int,
    items: list[dict],
    due_date: date | None,
    description: str | None = None,
    notes: str | None = None,
    status: InvoiceStatus = InvoiceStatus.open,
    stripe_invoice_id: str | None = None,
    currency: str = "usd",
    actor_id: int | None = None,
) -> Invoice:
    invoice = Invoice(
        patient_id=patient_id,
        invoice_number="",
        stripe_invoice_id=stripe_invoice_id,
        description=description,
        invoice_date=date.today(),
        due_date=due_date,
        status=status,
        currency=currency,
        notes=notes,
        created_by_user_id=actor_id,
        updated_by_user_id=actor_id,
    )
    for item in items:
        invoice.items.append(
            InvoiceItem(
                description=item["description"],
                service_type=item.get("service_type"),
                quantity=item.get("quantity", 1),
                unit_price_cents=item["unit_price_cents"],
            )
        )
    recalculate_totals(invoice)
    db.add(invoice)
    db.flush()
    invoice.invoice_number = format_invoice_number(invoice.id, invoice.invoice_date.year)
    return invoice


def record_payment(
    invoice: Invoice,
    *,
    amount_cents: int,
    payment_method: PaymentMethod,
    status: PaymentStatus = PaymentStatus.succeeded,
    stripe_charge_id: str | None = None,
    stripe_payment_intent_id: str | None = None,
    paid_at: datetime | None = None,
    notes: str | None = None,
    currency: str | None = None,
    recorded_by_user_id: int | None = None,
) -> InvoicePayment:
    payment = InvoicePayment(
        amount_cents=amount_cents,
        amount_refunded_cents=0,
        currency=currency or invoice.currency,
        payment_method=payment_method,
        status=status,
        stripe_charge_id=stripe_charge_id,
        stripe_payment_intent_id=stripe_payment_intent_id,
        paid_at=paid_at or datetime.now(timezone.utc),
        notes=notes,
        recorded_by_user_id=recorded_by_user_id,
    )
    invoice.payments.append(payment)
    update_status_from_payments(invoice)
    return payment


def append_note(existing: str | None, note: str | None) -> str | None:
    if not note:
        return existing
    if not existing:
        return note
    return f"{existing}\n{note}"
