from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Callable

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.core.settings import settings
from app.models.external_payment_mirror import ExternalPaymentMirror, MirrorMode
from app.models.invoice import (
    Invoice,
    InvoicePayment,
    InvoiceStatus,
    PaymentMethod,
    PaymentStatus,
)
from app.models.patient import Patient, PatientStatus
from app.models.subscription import ACTIVE_SUBSCRIPTION_STATUSES, StripeSubscription
from app.models.webhook_event import WebhookEvent
from app.services.audit import log_event
from app.services.invoices import create_invoice, record_payment, update_status_from_payments
from app.services.normalize import merge_hashtags, normalize_email
from app.services.patient_status import advance_status, coerce_status
from app.services.patients import find_patient_by_email, find_patient_by_stripe_customer
from app.services.stripe_mirror import mirror_external_payment

logger = logging.getLogger("eonmeds.webhooks.stripe")

ACTIVE_MEMBER_TAG = "activemember"

# Fields of a Stripe object that are kept when the event is stored. Names,
# addresses and card details are dropped.
SAFE_OBJECT_KEYS = (
    "id",
    "object",
    "amount",
    "amount_received",
    "amount_paid",
    "amount_due",
    "amount_refunded",
    "amount_total",
    "subtotal",
    "tax",
    "total",
    "currency",
    "status",
    "paid",
    "refunded",
    "customer",
    "invoice",
    "payment_intent",
    "latest_charge",
    "charge",
    "subscription",
    "created",
    "description",
    "metadata",
    "mode",
    "payment_status",
    "reason",
    "number",
    "current_period_end",
    "cancel_at_period_end",
    "canceled_at",
    "failure_code",
)

STRIPE_INVOICE_STATUS = {
    "draft": InvoiceStatus.draft,
    "open": InvoiceStatus.open,
    "paid": InvoiceStatus.paid,
    "void": InvoiceStatus.void,
    "uncollectible": InvoiceStatus.uncollectible,
}

# Invoice snapshots arrive in any order; a status only moves up this ranking
# and never leaves paid, void or refunded.
INVOICE_STATUS_RANK = {
    InvoiceStatus.draft: 0,
    InvoiceStatus.open: 1,
    InvoiceStatus.uncollectible: 2,
    InvoiceStatus.paid: 3,
    InvoiceStatus.void: 3,
    InvoiceStatus.refunded: 4,
}
TERMINAL_INVOICE_STATUSES = frozenset({InvoiceStatus.paid, InvoiceStatus.void, InvoiceStatus.refunded})


def _email_of(obj: dict[str, Any]) -> str | None:
    for candidate in (
        obj.get("email"),
        obj.get("customer_email"),
        obj.get("receipt_email"),
        (obj.get("billing_details") or {}).get("email"),
        (obj.get("customer_details") or {}).get("email"),
    ):
        email = normalize_email(candidate)
        if email:
            return email
    return None


def _id_of(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("id")
    return value


def _minimal_object(obj: dict[str, Any]) -> dict[str, Any]:
    minimal = {key: obj[key] for key in SAFE_OBJECT_KEYS if key in obj}
    for key in ("customer", "invoice", "payment_intent", "latest_charge", "charge", "subscription"):
        if key in minimal:
            minimal[key] = _id_of(minimal[key])
    email = _email_of(obj)
    if email:
        minimal["email"] = email
    transitions = obj.get("status_transitions") or {}
    if transitions.get("paid_at"):
        minimal["paid_at"] = transitions["paid_at"]
    lines = (obj.get("lines") or {}).get("data")
    if isinstance(lines, list):
        minimal["lines"] = [
            {
                "description": line.get("description"),
                "amount": line.get("amount"),
                "quantity": line.get("quantity") or 1,
            }
            for line in lines
        ]
    items = (obj.get("items") or {}).get("data")
    if isinstance(items, list) and items:
        price = items[0].get("price") or {}
        minimal["price_id"] = price.get("id")
        if "current_period_end" not in minimal and items[0].get("current_period_end"):
            minimal["current_period_end"] = items[0]["current_period_end"]
    return minimal


def sanitize_event(event: dict[str, Any]) -> dict[str, Any]:
    """Reduce a Stripe event to the minimum needed to reconcile it."""
    obj = ((event.get("data") or {}).get("object")) or {}
    return {
        "id": event.get("id"),
        "type": event.get("type"),
        "created": event.get("created"),
        "livemode": event.get("livemode", False),
        "data": {"object": _minimal_object(obj)},
    }


def _timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _resolve_patient(db: Session, obj: dict[str, Any]) -> Patient | None:
    customer_id = obj.get("customer")
    patient = find_patient_by_stripe_customer(db, customer_id)
    if patient is not None:
        return patient
    patient = find_patient_by_email(db, obj.get("email"))
    if patient is not None and customer_id and not patient.stripe_customer_id:
        patient.stripe_customer_id = customer_id
        logger.info("Linked Stripe customer to patient %s", patient.patient_id)
    return patient


def _find_payment(
    db: Session, *, charge_id: str | None = None, intent_id: str | None = None
) -> InvoicePayment | None:
    clauses = []
    if charge_id:
        clauses.append(InvoicePayment.stripe_charge_id == charge_id)
    if intent_id:
        clauses.append(InvoicePayment.stripe_payment_intent_id == intent_id)
    if not clauses:
        return None
    return db.scalar(select(InvoicePayment).where(or_(*clauses)).limit(1))


def _qualify(db: Session, patient: Patient, reason: str) -> None:
    try:
        current = coerce_status(patient.status)
    except ValueError:
        return
    if current == PatientStatus.pending:
        advance_status(db, patient, PatientStatus.qualified, reason=reason, origin="stripe")


def _receipt_invoice(
    db: Session,
    patient: Patient,
    *,
    amount_cents: int,
    currency: str,
    description: str | None,
    stripe_invoice_id: str | None = None,
) -> Invoice:
    # With a Stripe invoice id the local row is the one later invoice.* events update.
    invoice = create_invoice(
        db,
        patient_id=patient.id,
        items=[
            {
                "description": description or "Stripe payment",
                "quantity": 1,
                "unit_price_cents": amount_cents,
                "service_type": "stripe",
            }
        ],
        due_date=date.today(),
        currency=currency,
        stripe_invoice_id=stripe_invoice_id,
    )
    log_event(
        db,
        actor=None,
        action="invoice.created",
        entity_type="invoice",
        entity_id=str(invoice.id),
        origin="stripe",
        after_obj=invoice,
    )
    return invoice


def _record_stripe_payment(
    db: Session,
    invoice: Invoice,
    *,
    amount_cents: int,
    charge_id: str | None,
    intent_id: str | None,
    currency: str,
    created: Any,
) -> InvoicePayment:
    before_status = invoice.status
    payment = record_payment(
        invoice,
        amount_cents=amount_cents,
        payment_method=PaymentMethod.card,
        stripe_charge_id=charge_id,
        stripe_payment_intent_id=intent_id,
        paid_at=_timestamp(created),
        currency=currency,
    )
    log_event(
        db,
        actor=None,
        action="payment.recorded",
        entity_type="invoice",
        entity_id=str(invoice.id),
        origin="stripe",
        after_data={"amount_cents": amount_cents, "stripe_charge_id": charge_id},
    )
    if before_status != InvoiceStatus.paid and invoice.status == InvoiceStatus.paid:
        log_event(
            db,
            actor=None,
            action="invoice.paid",
            entity_type="invoice",
            entity_id=str(invoice.id),
            origin="stripe",
            after_obj=invoice,
        )
    return payment


def _advance_invoice_status(invoice: Invoice, status: InvoiceStatus) -> bool:
    current = invoice.status
    if current == status:
        return False
    if current in TERMINAL_INVOICE_STATUSES:
        return False
    if INVOICE_STATUS_RANK[status] < INVOICE_STATUS_RANK[current]:
        return False
    invoice.status = status
    return True


def _invoice_by_stripe_id(db: Session, stripe_invoice_id: str | None) -> Invoice | None:
    if not stripe_invoice_id:
        return None
    return db.scalar(select(Invoice).where(Invoice.stripe_invoice_id == stripe_invoice_id))


def handle_payment_intent_succeeded(db: Session, obj: dict[str, Any]) -> None:
    # The payment row itself is written by charge.succeeded.
    patient = _resolve_patient(db, obj)
    if patient is None:
        logger.info("PaymentIntent %s has no matching patient", obj.get("id"))
        return
    _qualify(db, patient, "payment_intent.succeeded")


def handle_payment_intent_status(db: Session, obj: dict[str, Any], status: PaymentStatus) -> None:
    payment = _find_payment(db, intent_id=obj.get("id"))
    if payment is None:
        logger.info("PaymentIntent %s is %s (no local payment)", obj.get("id"), status.value)
        return
    payment.status = status
    update_status_from_payments(payment.invoice)


def handle_charge_succeeded(db: Session, obj: dict[str, Any]) -> None:
    charge_id = obj.get("id")
    intent_id = obj.get("payment_intent")
    existing = _find_payment(db, charge_id=charge_id, intent_id=intent_id)
    if existing is not None:
        if not existing.stripe_charge_id:
            existing.stripe_charge_id = charge_id
        logger.info("Charge %s already recorded", charge_id)
        return

    amount = int(obj.get("amount") or 0)
    currency = obj.get("currency") or "usd"
    patient = _resolve_patient(db, obj)
    if patient is None:
        logger.info("Charge %s has no matching patient", charge_id)
        if settings.stripe_mirror_external_payments:
            mirror_external_payment(db, obj, None)
        return

    stripe_invoice_id = obj.get("invoice")
    invoice = _invoice_by_stripe_id(db, stripe_invoice_id)
    if invoice is None:
        invoice = _receipt_invoice(
            db,
            patient,
            amount_cents=amount,
            currency=currency,
            description=obj.get("description"),
            stripe_invoice_id=stripe_invoice_id,
        )
    _record_stripe_payment(
        db,
        invoice,
        amount_cents=amount,
        charge_id=charge_id,
        intent_id=intent_id,
        currency=currency,
        created=obj.get("created"),
    )
    _qualify(db, patient, "charge.succeeded")

    if settings.stripe_mirror_external_payments and not obj.get("invoice"):
        mirror = mirror_external_payment(db, obj, patient)
        if mirror is not None and mirror.mode == MirrorMode.created_invoice:
            invoice.stripe_invoice_id = mirror.created_invoice_id


def handle_charge_failed(db: Session, obj: dict[str, Any]) -> None:
    payment = _find_payment(db, charge_id=obj.get("id"))
    if payment is not None:
        payment.status = PaymentStatus.failed
        update_status_from_payments(payment.invoice)
        return
    invoice = _invoice_by_stripe_id(db, obj.get("invoice"))
    if invoice is None:
        logger.info("Charge %s failed (%s)", obj.get("id"), obj.get("failure_code"))
        return
    before_status = invoice.status
    record_payment(
        invoice,
        amount_cents=int(obj.get("amount") or 0),
        payment_method=PaymentMethod.card,
        status=PaymentStatus.failed,
        stripe_charge_id=obj.get("id"),
        stripe_payment_intent_id=obj.get("payment_intent"),
        paid_at=_timestamp(obj.get("created")),
        notes=obj.get("failure_code"),
    )
    if before_status in TERMINAL_INVOICE_STATUSES:
        invoice.status = before_status


def handle_charge_refunded(db: Session, obj: dict[str, Any]) -> None:
    payment = _find_payment(db, charge_id=obj.get("id"))
    if payment is None:
        logger.info("Refund for unknown charge %s", obj.get("id"))
        return
    refunded = int(obj.get("amount_refunded") or 0)
    payment.amount_refunded_cents = refunded
    if refunded >= payment.amount_cents:
        payment.status = PaymentStatus.refunded
    invoice = payment.invoice
    invoice.amount_refunded_cents = sum(item.amount_refunded_cents for item in invoice.payments)
    update_status_from_payments(invoice)
    log_event(
        db,
        actor=None,
        action="payment.refunded",
        entity_type="invoice",
        entity_id=str(invoice.id),
        origin="stripe",
        after_data={"stripe_charge_id": obj.get("id"), "amount_refunded_cents": refunded},
    )


def handle_dispute(db: Session, obj: dict[str, Any], *, closed: bool) -> None:
    payment = _find_payment(db, charge_id=obj.get("charge"))
    if payment is None:
        logger.info("Dispute %s for unknown charge", obj.get("id"))
        return
    if not closed:
        payment.status = PaymentStatus.disputed
    elif obj.get("status") == "won":
        payment.status = PaymentStatus.succeeded
    elif obj.get("status") == "lost":
        payment.status = PaymentStatus.refunded
        payment.amount_refunded_cents = payment.amount_cents
        invoice = payment.invoice
        invoice.amount_refunded_cents = sum(item.amount_refunded_cents for item in invoice.payments)
        update_status_from_payments(invoice)


def handle_customer(db: Session, obj: dict[str, Any]) -> None:
    customer_id = obj.get("id")
    patient = find_patient_by_email(db, obj.get("email"))
    if patient is None:
        logger.info("Stripe customer %s has no matching patient", customer_id)
        return
    if patient.stripe_customer_id and patient.stripe_customer_id != customer_id:
        logger.warning(
            "Patient %s already linked to a different Stripe customer", patient.patient_id
        )
        return
    patient.stripe_customer_id = customer_id


def handle_subscription(db: Session, obj: dict[str, Any], *, deleted: bool) -> None:
    subscription_id = obj.get("id")
    subscription = db.scalar(
        select(StripeSubscription).where(
            StripeSubscription.stripe_subscription_id == subscription_id
        )
    )
    patient = find_patient_by_stripe_customer(db, obj.get("customer"))
    if subscription is None:
        subscription = StripeSubscription(
            stripe_subscription_id=subscription_id,
            stripe_customer_id=obj.get("customer"),
        )
        db.add(subscription)
    subscription.status = "canceled" if deleted else (obj.get("status") or "incomplete")
    subscription.price_id = obj.get("price_id") or subscription.price_id
    subscription.current_period_end = _timestamp(obj.get("current_period_end"))
    subscription.cancel_at_period_end = bool(obj.get("cancel_at_period_end"))
    subscription.canceled_at = _timestamp(obj.get("canceled_at"))
    if patient is None:
        logger.info("Subscription %s has no matching patient", subscription_id)
        return
    subscription.patient_id = patient.id

    if subscription.status in ACTIVE_SUBSCRIPTION_STATUSES:
        _qualify(db, patient, "subscription.active")
        advance_status(db, patient, PatientStatus.active, reason="subscription.active", origin="stripe")
        patient.membership_hashtags = merge_hashtags(patient.membership_hashtags, [ACTIVE_MEMBER_TAG])
    elif subscription.status in {"canceled", "unpaid", "incomplete_expired"}:
        advance_status(
            db, patient, PatientStatus.inactive, reason=f"subscription.{subscription.status}", origin="stripe"
        )
        patient.membership_hashtags = [
            tag for tag in patient.membership_hashtags or [] if tag != ACTIVE_MEMBER_TAG
        ]


def handle_invoice(db: Session, obj: dict[str, Any], event_type: str) -> None:
    stripe_invoice_id = obj.get("id")
    if event_type == "invoice.voided":
        status = InvoiceStatus.void
    elif event_type == "invoice.marked_uncollectible":
        status = InvoiceStatus.uncollectible
    elif event_type == "invoice.paid":
        status = InvoiceStatus.paid
    else:
        status = STRIPE_INVOICE_STATUS.get(obj.get("status") or "", InvoiceStatus.open)
    invoice = _invoice_by_stripe_id(db, stripe_invoice_id)
    if invoice is None:
        patient = _resolve_patient(db, obj)
        if patient is None:
            logger.info("Stripe invoice %s has no matching patient", stripe_invoice_id)
            return
        lines = obj.get("lines") or []
        items = [
            {
                "description": line.get("description") or "Stripe invoice item",
                "quantity": 1,
                "unit_price_cents": int(line.get("amount") or 0),
                "service_type": "stripe",
            }
            for line in lines
        ] or [
            {
                "description": obj.get("description") or "Stripe invoice",
                "quantity": 1,
                "unit_price_cents": int(obj.get("total") or obj.get("amount_due") or 0),
                "service_type": "stripe",
            }
        ]
        invoice = create_invoice(
            db,
            patient_id=patient.id,
            items=items,
            due_date=None,
            description=obj.get("description"),
            stripe_invoice_id=stripe_invoice_id,
            currency=obj.get("currency") or "usd",
            status=status,
        )
    if obj.get("total") is not None:
        invoice.total_cents = int(obj["total"])
        invoice.tax_cents = int(obj.get("tax") or 0)
        invoice.subtotal_cents = int(obj.get("subtotal") or invoice.total_cents - invoice.tax_cents)

    if not _advance_invoice_status(invoice, status) and invoice.status != status:
        logger.info(
            "Stripe invoice %s kept at %s (snapshot says %s)",
            stripe_invoice_id,
            invoice.status.value,
            status.value,
        )
    if invoice.status == InvoiceStatus.paid and invoice.paid_at is None:
        invoice.paid_at = _timestamp(obj.get("paid_at")) or datetime.now(timezone.utc)
    if event_type == "invoice.payment_failed":
        logger.info("Stripe invoice %s payment failed", stripe_invoice_id)
    if invoice.status == InvoiceStatus.paid and invoice.patient is not None:
        _qualify(db, invoice.patient, "invoice.paid")


def handle_checkout_completed(db: Session, obj: dict[str, Any]) -> None:
    email = obj.get("email")
    patient = find_patient_by_email(db, email)
    customer_id = obj.get("customer")
    if patient is None:
        reference = obj.get("payment_intent") or obj.get("id")
        if db.scalar(select(ExternalPaymentMirror).where(ExternalPaymentMirror.charge_id == reference)):
            return
        db.add(
            ExternalPaymentMirror(
                charge_id=reference,
                mode=MirrorMode.unmatched,
                amount_cents=int(obj.get("amount_total") or 0),
                currency=obj.get("currency") or "usd",
                email=email,
                stripe_customer_id=customer_id,
                note="Checkout session without a matching patient",
            )
        )
        logger.warning("Checkout session %s queued for review (no patient match)", obj.get("id"))
        return

    if customer_id and not patient.stripe_customer_id:
        patient.stripe_customer_id = customer_id
    amount = int(obj.get("amount_total") or 0)
    intent_id = obj.get("payment_intent")
    if obj.get("payment_status") != "paid" or amount <= 0:
        return
    if _find_payment(db, intent_id=intent_id) is not None:
        return
    invoice = _invoice_by_stripe_id(db, obj.get("invoice"))
    if invoice is None:
        invoice = _receipt_invoice(
            db,
            patient,
            amount_cents=amount,
            currency=obj.get("currency") or "usd",
            description="Checkout payment",
            stripe_invoice_id=obj.get("invoice"),
        )
    _record_stripe_payment(
        db,
        invoice,
        amount_cents=amount,
        charge_id=None,
        intent_id=intent_id,
        currency=obj.get("currency") or "usd",
        created=obj.get("created"),
    )
    _qualify(db, patient, "checkout.session.completed")


def _log_only(db: Session, obj: dict[str, Any]) -> None:
    logger.info("Stripe %s %s acknowledged", obj.get("object"), obj.get("id"))


HANDLERS: dict[str, Callable[[Session, dict[str, Any]], None]] = {
    "payment_intent.succeeded": handle_payment_intent_succeeded,
    "payment_intent.payment_failed": lambda db, obj: handle_payment_intent_status(
        db, obj, PaymentStatus.failed
    ),
    "payment_intent.processing": lambda db, obj: handle_payment_intent_status(
        db, obj, PaymentStatus.pending
    ),
    "charge.succeeded": handle_charge_succeeded,
    "charge.failed": handle_charge_failed,
    "charge.refunded": handle_charge_refunded,
    "charge.dispute.created": lambda db, obj: handle_dispute(db, obj, closed=False),
    "charge.dispute.closed": lambda db, obj: handle_dispute(db, obj, closed=True),
    "customer.created": handle_customer,
    "customer.updated": handle_customer,
    "customer.subscription.created": lambda db, obj: handle_subscription(db, obj, deleted=False),
    "customer.subscription.updated": lambda db, obj: handle_subscription(db, obj, deleted=False),
    "customer.subscription.deleted": lambda db, obj: handle_subscription(db, obj, deleted=True),
    "payment_method.attached": _log_only,
    "payment_method.detached": _log_only,
    "checkout.session.completed": handle_checkout_completed,
}

INVOICE_EVENTS = frozenset(
    {
        "invoice.created",
        "invoice.finalized",
        "invoice.paid",
        "invoice.payment_failed",
        "invoice.voided",
        "invoice.marked_uncollectible",
    }
)


def process_stripe_event(db: Session, event: WebhookEvent) -> None:
    payload = event.payload
    event_type = payload.get("type") or event.event_type
    obj = (payload.get("data") or {}).get("object") or {}
    if event_type in INVOICE_EVENTS:
        handle_invoice(db, obj, event_type)
    elif event_type in HANDLERS:
        HANDLERS[event_type](db, obj)
    else:
        logger.info("Unhandled Stripe event type %s", event_type)
        return
    db.flush()
    logger.info("Stripe event %s (%s) reconciled", event.provider_event_id, event_type)
