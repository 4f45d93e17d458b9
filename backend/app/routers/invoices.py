import logging

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.deps import client_ip, get_current_user, require_roles
from app.models.invoice import Invoice, InvoiceStatus, PaymentMethod, PaymentStatus
from app.models.user import Role, User
from app.routers.patients import load_patient
from app.schemas.invoice import InvoiceCreate, InvoiceOut, InvoiceSummaryOut, ManualPaymentCreate
from app.services import stripe_client
from app.services.audit import log_event, snapshot_model
from app.services.invoices import append_note, create_invoice as build_invoice, record_payment

logger = logging.getLogger("eonmeds.invoices")

router = APIRouter(prefix="/invoices", tags=["invoices"])
patient_invoices_router = APIRouter(prefix="/patients", tags=["invoices"])

BILLING_ROLES = (Role.admin.value, Role.provider.value)
CLOSED_STATUSES = {InvoiceStatus.paid, InvoiceStatus.void}


def load_invoice(db: Session, invoice_id: int) -> Invoice:
    invoice = db.get(Invoice, invoice_id)
    if not invoice:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
    return invoice


def _log_paid(db: Session, invoice: Invoice, before_status: InvoiceStatus, **kwargs) -> None:
    if before_status != InvoiceStatus.paid and invoice.status == InvoiceStatus.paid:
        log_event(
            db,
            action="invoice.paid",
            entity_type="invoice",
            entity_id=str(invoice.id),
            after_obj=invoice,
            **kwargs,
        )


@router.post("", response_model=InvoiceOut, status_code=status.HTTP_201_CREATED)
def create_invoice(
    payload: InvoiceCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*BILLING_ROLES)),
    request_id: str | None = Header(default=None),
):
    patient = load_patient(db, str(payload.patient_id))
    if payload.due_date is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Due date is required")
    if not payload.items:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invoice must have at least one item"
        )
    if sum(item.quantity * item.unit_price_cents for item in payload.items) <= 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invoice total must be greater than zero",
        )

    invoice = build_invoice(
        db,
        patient_id=patient.id,
        items=[item.model_dump() for item in payload.items],
        due_date=payload.due_date,
        description=payload.description,
        notes=payload.notes,
        status=InvoiceStatus.open,
        actor_id=user.id,
    )
    log_event(
        db,
        actor=user,
        action="invoice.created",
        entity_type="invoice",
        entity_id=str(invoice.id),
        after_obj=invoice,
        request_id=request_id,
        ip_address=client_ip(request),
    )
    db.commit()
    db.refresh(invoice)
    return invoice


@router.get("", response_model=list[InvoiceSummaryOut])
def list_invoices(
    db: Session = Depends(get_db),
    _user: User = Depends(get_current_user),
    patient_id: int | None = Query(default=None),
    status_filter: InvoiceStatus | None = Query(default=None, alias="status"),
    q: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    stmt = select(Invoice)
    if patient_id is not None:
        stmt = stmt.where(Invoice.patient_id == patient_id)
    if status_filter is not None:
        stmt = stmt.where(Invoice.status == status_filter)
    if q:
        stmt = stmt.where(Invoice.invoice_number.ilike(f"%{q.strip()}%"))
    stmt = stmt.order_by(Invoice.created_at.desc(), Invoice.id.desc()).limit(limit).offset(offset)
    return list(db.scalars(stmt))


@patient_invoices_router.get("/{patient_ref}/invoices", response_model=list[InvoiceSummaryOut])
def list_patient_invoices(
    patient_ref: str,
    db: Session = Depends(get_db),
    _user: User = Depends(get_current_user),
):
    patient = load_patient(db, patient_ref)
    stmt = (
        select(Invoice)
        .where(Invoice.patient_id == patient.id)
        .order_by(Invoice.invoice_date.desc(), Invoice.id.desc())
    )
    return list(db.scalars(stmt))


@router.get("/{invoice_id}", response_model=InvoiceOut)
def get_invoice(
    invoice_id: int,
    db: Session = Depends(get_db),
    _user: User = Depends(get_current_user),
):
    return load_invoice(db, invoice_id)


@router.delete("/{invoice_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_invoice(
    invoice_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.admin.value)),
    request_id: str | None = Header(default=None),
):
    invoice = load_invoice(db, invoice_id)
    if any(payment.status == PaymentStatus.succeeded for payment in invoice.payments):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot delete an invoice with successful payments",
        )
    log_event(
        db,
        actor=user,
        action="invoice.deleted",
        entity_type="invoice",
        entity_id=str(invoice.id),
        before_obj=invoice,
        request_id=request_id,
        ip_address=client_ip(request),
    )
    db.delete(invoice)
    db.commit()


@router.post("/{invoice_id}/void", response_model=InvoiceOut)
def void_invoice(
    invoice_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*BILLING_ROLES)),
    request_id: str | None = Header(default=None),
):
    invoice = load_invoice(db, invoice_id)
    if invoice.status == InvoiceStatus.void:
        return invoice
    if invoice.status == InvoiceStatus.paid:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Paid invoices cannot be voided"
        )
    before_data = snapshot_model(invoice)
    invoice.status = InvoiceStatus.void
    invoice.updated_by_user_id = user.id
    log_event(
        db,
        actor=user,
        action="invoice.voided",
        entity_type="invoice",
        entity_id=str(invoice.id),
        before_data=before_data,
        after_obj=invoice,
        request_id=request_id,
        ip_address=client_ip(request),
    )
    db.commit()
    db.refresh(invoice)
    return invoice


@router.post("/{invoice_id}/charge", response_model=InvoiceOut)
def charge_invoice(
    invoice_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*BILLING_ROLES)),
    request_id: str | None = Header(default=None),
):
    invoice = load_invoice(db, invoice_id)
    if invoice.status in CLOSED_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invoice is already {invoice.status.value}",
        )
    patient = invoice.patient
    if not patient.stripe_customer_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Patient does not have a Stripe customer",
        )
    amount = invoice.balance_cents
    if amount <= 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invoice has no outstanding balance"
        )

    try:
        intent = stripe_client.charge_customer(
            customer_id=patient.stripe_customer_id,
            amount_cents=amount,
            currency=invoice.currency,
            description=f"Invoice {invoice.invoice_number}",
            idempotency_key=f"invoice:{invoice.id}:charge",
            metadata={"invoice_id": str(invoice.id), "patient_id": patient.patient_id},
        )
    except stripe.CardError as exc:
        logger.info("Card declined for invoice %s", invoice.id)
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=exc.user_message or str(exc),
        )
    except stripe_client.StripeNotConfigured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Stripe is not configured"
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    if intent["status"] != "succeeded":
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=f"Payment {intent['status']}",
        )

    before_status = invoice.status
    record_payment(
        invoice,
        amount_cents=amount,
        payment_method=PaymentMethod.card,
        stripe_charge_id=intent["latest_charge"],
        stripe_payment_intent_id=intent["id"],
        recorded_by_user_id=user.id,
    )
    invoice.updated_by_user_id = user.id
    log_event(
        db,
        actor=user,
        action="invoice.charged",
        entity_type="invoice",
        entity_id=str(invoice.id),
        after_data={"amount_cents": amount, "payment_intent_id": intent["id"]},
        request_id=request_id,
        ip_address=client_ip(request),
    )
    _log_paid(
        db, invoice, before_status, actor=user, request_id=request_id, ip_address=client_ip(request)
    )
    db.commit()
    db.refresh(invoice)
    return invoice


@router.post("/{invoice_id}/manual-payment", response_model=InvoiceOut)
def record_manual_payment(
    invoice_id: int,
    payload: ManualPaymentCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*BILLING_ROLES)),
    request_id: str | None = Header(default=None),
):
    invoice = load_invoice(db, invoice_id)
    if invoice.status == InvoiceStatus.void:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot record payment on a void invoice"
        )
    balance = invoice.balance_cents
    if balance <= 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invoice has no outstanding balance"
        )
    amount = payload.amount_cents if payload.amount_cents is not None else balance
    if amount > balance:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Payment exceeds invoice balance"
        )

    before_status = invoice.status
    payment = record_payment(
        invoice,
        amount_cents=amount,
        payment_method=payload.payment_method,
        paid_at=payload.paid_at,
        notes=payload.notes,
        recorded_by_user_id=user.id,
    )
    invoice.notes = append_note(invoice.notes, payload.notes)
    invoice.updated_by_user_id = user.id
    log_event(
        db,
        actor=user,
        action="payment.recorded",
        entity_type="invoice",
        entity_id=str(invoice.id),
        after_data={
            "amount_cents": amount,
            "payment_method": payment.payment_method.value,
        },
        request_id=request_id,
        ip_address=client_ip(request),
    )
    _log_paid(
        db, invoice, before_status, actor=user, request_id=request_id, ip_address=client_ip(request)
    )
    db.commit()
    db.refresh(invoice)
    return invoice
