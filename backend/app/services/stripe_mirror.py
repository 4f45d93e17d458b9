from __future__ import annotations

import logging
from typing import Any

import stripe
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.logging import redact_string
from app.core.settings import settings
from app.models.external_payment_mirror import ExternalPaymentMirror, MirrorMode
from app.models.patient import Patient
from app.services import stripe_client
from app.services.normalize import normalize_email
from app.services.patients import find_patient_by_email

logger = logging.getLogger("eonmeds.stripe.mirror")


def is_platform_charge(charge: dict[str, Any]) -> bool:
    metadata = charge.get("metadata") or {}
    return metadata.get("platform") == settings.stripe_platform_tag


def mirror_external_payment(
    db: Session, charge: dict[str, Any], patient: Patient | None
) -> ExternalPaymentMirror | None:
    """Reflect a charge taken outside the platform as a paid Stripe invoice.

    Each charge is handled at most once; the outcome (created invoice,
    unmatched, failed) is kept in ``external_payment_mirrors``.
    """
    charge_id = charge.get("id")
    if not charge_id or is_platform_charge(charge):
        return None
    existing = db.scalar(
        select(ExternalPaymentMirror).where(ExternalPaymentMirror.charge_id == charge_id)
    )
    if existing is not None:
        return existing

    amount = int(charge.get("amount") or 0)
    currency = charge.get("currency") or "usd"
    customer_id = charge.get("customer")
    mirror = ExternalPaymentMirror(
        charge_id=charge_id,
        mode=MirrorMode.unmatched,
        amount_cents=amount,
        currency=currency,
        stripe_customer_id=customer_id,
    )
    db.add(mirror)

    email = normalize_email(charge.get("email"))
    if not email and customer_id:
        try:
            email = normalize_email(stripe_client.retrieve_customer_email(customer_id))
        except stripe.StripeError as exc:
            logger.warning("Could not load customer for charge %s: %s", charge_id, exc)
    mirror.email = email
    if not email:
        mirror.note = "No email on charge or customer"
        return mirror

    patient = patient or find_patient_by_email(db, email)
    if patient is None:
        mirror.note = "No patient with this email"
        return mirror
    mirror.matched_patient_id = patient.id

    try:
        if not patient.stripe_customer_id:
            patient.stripe_customer_id = customer_id or stripe_client.create_customer(
                email=patient.email,
                name=patient.full_name,
                patient_code=patient.patient_id or str(patient.id),
            )
        mirror.stripe_customer_id = patient.stripe_customer_id
        mirror.created_invoice_id = stripe_client.mirror_invoice(
            customer_id=patient.stripe_customer_id,
            amount_cents=amount,
            currency=currency,
            description=charge.get("description") or "External payment",
            charge_id=charge_id,
        )
        mirror.mode = MirrorMode.created_invoice
    except stripe.StripeError as exc:
        mirror.mode = MirrorMode.failed
        mirror.note = redact_string(str(exc))[:500]
        logger.warning("Mirroring charge %s failed: %s", charge_id, exc.__class__.__name__)
    return mirror
