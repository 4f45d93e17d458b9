from __future__ import annotations

import json
import logging
from typing import Any

import stripe

from app.core.settings import settings

logger = logging.getLogger("eonmeds.stripe")


class StripeNotConfigured(RuntimeError):
    pass


def _configure() -> None:
    if not settings.stripe_secret_key:
        raise StripeNotConfigured("STRIPE_SECRET_KEY is not set")
    stripe.api_key = settings.stripe_secret_key


def construct_event(raw_body: bytes, signature: str | None, secret: str) -> dict[str, Any]:
    """Verify a Stripe-Signature header and return the event as plain data.

    Raises ``stripe.SignatureVerificationError`` on a bad or stale signature.
    """
    stripe.Webhook.construct_event(raw_body, signature or "", secret)
    return json.loads(raw_body)


def find_customer_by_email(email: str) -> str | None:
    _configure()
    customers = stripe.Customer.list(email=email, limit=1)
    for customer in customers.data:
        return customer.id
    return None


def create_customer(*, email: str, name: str, patient_code: str) -> str:
    _configure()
    customer = stripe.Customer.create(
        email=email,
        name=name,
        metadata={"patient_id": patient_code},
        idempotency_key=f"patient:{patient_code}:customer",
    )
    return customer.id


def retrieve_customer_email(customer_id: str) -> str | None:
    _configure()
    customer = stripe.Customer.retrieve(customer_id)
    return getattr(customer, "email", None)


def _card_summary(method: Any, default_id: str | None = None) -> dict[str, Any]:
    card = getattr(method, "card", None)
    customer = getattr(method, "customer", None)
    if customer is not None and not isinstance(customer, str):
        customer = customer.id
    return {
        "id": method.id,
        "customer": customer,
        "brand": getattr(card, "brand", None),
        "last4": getattr(card, "last4", None),
        "exp_month": getattr(card, "exp_month", None),
        "exp_year": getattr(card, "exp_year", None),
        "created": getattr(method, "created", None),
        "is_default": method.id == default_id,
    }


def customer_default_method_id(customer_id: str) -> str | None:
    _configure()
    customer = stripe.Customer.retrieve(customer_id)
    invoice_settings = getattr(customer, "invoice_settings", None)
    method = getattr(invoice_settings, "default_payment_method", None) if invoice_settings else None
    if method is not None and not isinstance(method, str):
        method = method.id
    return method


def create_setup_intent(customer_id: str) -> dict[str, Any]:
    _configure()
    intent = stripe.SetupIntent.create(
        customer=customer_id,
        payment_method_types=["card"],
        usage="off_session",
        metadata={"platform": settings.stripe_platform_tag},
    )
    return {"id": intent.id, "client_secret": intent.client_secret}


def list_cards(customer_id: str) -> list[dict[str, Any]]:
    default_id = customer_default_method_id(customer_id)
    methods = stripe.PaymentMethod.list(customer=customer_id, type="card", limit=100)
    return [_card_summary(method, default_id) for method in methods.data]


def retrieve_card(payment_method_id: str) -> dict[str, Any]:
    _configure()
    return _card_summary(stripe.PaymentMethod.retrieve(payment_method_id))


def attach_card(payment_method_id: str, customer_id: str) -> dict[str, Any]:
    _configure()
    method = stripe.PaymentMethod.attach(payment_method_id, customer=customer_id)
    return _card_summary(method)


def detach_card(payment_method_id: str) -> None:
    _configure()
    stripe.PaymentMethod.detach(payment_method_id)


def set_default_card(customer_id: str, payment_method_id: str) -> None:
    _configure()
    stripe.Customer.modify(
        customer_id, invoice_settings={"default_payment_method": payment_method_id}
    )


def default_payment_method(customer_id: str) -> str | None:
    method = customer_default_method_id(customer_id)
    if method:
        return method
    methods = stripe.PaymentMethod.list(customer=customer_id, type="card", limit=1)
    for item in methods.data:
        return item.id
    return None


def charge_customer(
    *,
    customer_id: str,
    amount_cents: int,
    currency: str,
    description: str,
    idempotency_key: str,
    metadata: dict[str, str],
) -> dict[str, Any]:
    _configure()
    payment_method = default_payment_method(customer_id)
    if not payment_method:
        raise ValueError("Customer has no saved payment method")
    intent = stripe.PaymentIntent.create(
        amount=amount_cents,
        currency=currency,
        customer=customer_id,
        payment_method=payment_method,
        description=description,
        metadata={**metadata, "platform": settings.stripe_platform_tag},
        off_session=True,
        confirm=True,
        idempotency_key=idempotency_key,
    )
    latest_charge = getattr(intent, "latest_charge", None)
    if latest_charge is not None and not isinstance(latest_charge, str):
        latest_charge = latest_charge.id
    return {"id": intent.id, "status": intent.status, "latest_charge": latest_charge}


def mirror_invoice(
    *,
    customer_id: str,
    amount_cents: int,
    currency: str,
    description: str,
    charge_id: str,
) -> str:
    """Create a paid-out-of-band Stripe invoice for a payment taken elsewhere."""
    _configure()
    key = f"mirror:{charge_id}"
    stripe.InvoiceItem.create(
        customer=customer_id,
        amount=amount_cents,
        currency=currency,
        description=description,
        metadata={"mirrored_charge_id": charge_id},
        idempotency_key=f"{key}-item",
    )
    invoice = stripe.Invoice.create(
        customer=customer_id,
        collection_method="send_invoice",
        days_until_due=0,
        auto_advance=False,
        pending_invoice_items_behavior="include",
        metadata={"mirrored_charge_id": charge_id, "platform": settings.stripe_platform_tag},
        idempotency_key=f"{key}-invoice",
    )
    stripe.Invoice.finalize_invoice(invoice.id, idempotency_key=f"{key}-finalize")
    stripe.Invoice.pay(invoice.id, paid_out_of_band=True, idempotency_key=f"{key}-pay")
    logger.info("Mirrored charge %s into Stripe invoice %s", charge_id, invoice.id)
    return invoice.id
