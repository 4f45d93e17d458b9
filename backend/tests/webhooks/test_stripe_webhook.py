import json
import time
from types import SimpleNamespace
from uuid import uuid4

import pytest
import stripe
from sqlalchemy import select

from app.core.settings import settings
from app.db.session import SessionLocal
from app.models.external_payment_mirror import ExternalPaymentMirror, MirrorMode
from app.models.subscription import StripeSubscription
from app.models.webhook_event import WebhookEvent, WebhookSource
from app.services import stripe_events


def _event(event_type: str, obj: dict, event_id: str | None = None) -> dict:
    return {
        "id": event_id or f"evt_{uuid4().hex}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "livemode": False,
        "data": {"object": obj},
    }


def _charge(email: str, *, amount: int = 5000, customer: str | None = None, **extra) -> dict:
    obj = {
        "id": f"ch_{uuid4().hex[:16]}",
        "object": "charge",
        "amount": amount,
        "currency": "usd",
        "status": "succeeded",
        "paid": True,
        "customer": customer or f"cus_{uuid4().hex[:14]}",
        "payment_intent": f"pi_{uuid4().hex[:16]}",
        "description": "Semaglutide monthly",
        "created": int(time.time()),
        "billing_details": {
            "email": email,
            "name": "Maria Lopez",
            "address": {"line1": "1 Main St", "city": "Tampa"},
        },
        "payment_method_details": {"card": {"last4": "4242", "brand": "visa"}},
    }
    obj.update(extra)
    return obj


def _stored_event(provider_event_id: str) -> WebhookEvent:
    with SessionLocal() as db:
        return db.scalar(
            select(WebhookEvent).where(
                WebhookEvent.source == WebhookSource.stripe,
                WebhookEvent.provider_event_id == provider_event_id,
            )
        )


def _patient_invoices(api_client, headers, patient_id):
    response = api_client.get(f"/api/v1/patients/{patient_id}/invoices", headers=headers)
    assert response.status_code == 200, response.text
    return response.json()


@pytest.fixture()
def paid_patient(create_patient, post_stripe_event):
    patient = create_patient()
    charge = _charge(patient["email"].upper())
    event = _event("charge.succeeded", charge)
    response = post_stripe_event(event)
    assert response.status_code == 200, response.text
    return patient, charge, event, response.json()


def test_missing_webhook_secret(monkeypatch, post_stripe_event):
    monkeypatch.setattr(settings, "stripe_webhook_secret", None)
    response = post_stripe_event(_event("charge.succeeded", {}), secret="whsec_any")
    assert response.status_code == 500
    assert response.json()["detail"] == "Webhook secret not configured"


def test_bad_signature_rejected(post_stripe_event):
    response = post_stripe_event(_event("charge.succeeded", {}), secret="whsec_wrong")
    assert response.status_code == 400
    assert response.json()["detail"] == "Webhook signature verification failed"


def test_missing_signature_header_rejected(api_client):
    response = api_client.post(
        "/api/v1/webhooks/stripe",
        content=json.dumps(_event("charge.succeeded", {})),
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 400


def test_charge_succeeded_records_payment_and_qualifies(api_client, auth_headers, paid_patient):
    patient, charge, event, ack = paid_patient
    assert ack["received"] is True
    assert ack["duplicate"] is False

    refreshed = api_client.get(f"/api/v1/patients/{patient['id']}", headers=auth_headers).json()
    assert refreshed["status"] == "qualified"
    assert refreshed["stripe_customer_id"] == charge["customer"]

    invoices = _patient_invoices(api_client, auth_headers, patient["id"])
    assert len(invoices) == 1
    invoice = invoices[0]
    assert invoice["status"] == "paid"
    assert invoice["total_cents"] == 5000
    assert invoice["amount_paid_cents"] == 5000
    assert invoice["balance_cents"] == 0

    detail = api_client.get(f"/api/v1/invoices/{invoice['id']}", headers=auth_headers).json()
    assert detail["payments"][0]["stripe_charge_id"] == charge["id"]
    assert detail["payments"][0]["payment_method"] == "card"


def test_stored_payload_is_minimized(paid_patient):
    _, charge, event, _ = paid_patient
    stored = _stored_event(event["id"])
    assert stored.processed is True
    obj = stored.payload["data"]["object"]
    assert obj["id"] == charge["id"]
    assert obj["amount"] == 5000
    assert obj["email"] == charge["billing_details"]["email"].lower()
    assert "billing_details" not in obj
    assert "payment_method_details" not in obj


def test_duplicate_event_is_acknowledged(api_client, auth_headers, paid_patient, post_stripe_event):
    patient, charge, event, ack = paid_patient
    response = post_stripe_event(event)
    assert response.status_code == 200, response.text
    assert response.json()["duplicate"] is True
    assert response.json()["eventId"] == ack["eventId"]
    assert len(_patient_invoices(api_client, auth_headers, patient["id"])) == 1


def test_same_charge_under_new_event_id_is_not_double_counted(
    api_client, auth_headers, paid_patient, post_stripe_event
):
    patient, charge, _, _ = paid_patient
    response = post_stripe_event(_event("charge.succeeded", charge))
    assert response.status_code == 200, response.text
    assert response.json()["duplicate"] is False
    invoices = _patient_invoices(api_client, auth_headers, patient["id"])
    assert len(invoices) == 1
    assert invoices[0]["amount_paid_cents"] == 5000


def test_charge_refunded(api_client, auth_headers, paid_patient, post_stripe_event):
    patient, charge, _, _ = paid_patient
    refund = {**charge, "refunded": True, "amount_refunded": 5000}
    response = post_stripe_event(_event("charge.refunded", refund))
    assert response.status_code == 200, response.text

    invoice = _patient_invoices(api_client, auth_headers, patient["id"])[0]
    assert invoice["status"] == "refunded"
    assert invoice["amount_refunded_cents"] == 5000
    detail = api_client.get(f"/api/v1/invoices/{invoice['id']}", headers=auth_headers).json()
    assert detail["payments"][0]["status"] == "refunded"


def test_charge_for_unknown_customer_is_ignored(post_stripe_event):
    event = _event("charge.succeeded", _charge(f"nobody-{uuid4().hex[:8]}@example.com"))
    response = post_stripe_event(event)
    assert response.status_code == 200, response.text
    assert _stored_event(event["id"]).processed is True


def test_subscription_lifecycle(api_client, auth_headers, paid_patient, post_stripe_event):
    patient, charge, _, _ = paid_patient
    subscription = {
        "id": f"sub_{uuid4().hex[:14]}",
        "object": "subscription",
        "customer": charge["customer"],
        "status": "active",
        "current_period_end": int(time.time()) + 30 * 86400,
        "cancel_at_period_end": False,
        "items": {"data": [{"price": {"id": "price_monthly"}}]},
    }
    response = post_stripe_event(_event("customer.subscription.created", subscription))
    assert response.status_code == 200, response.text

    active = api_client.get(f"/api/v1/patients/{patient['id']}", headers=auth_headers).json()
    assert active["status"] == "active"
    assert "activemember" in active["membership_hashtags"]

    with SessionLocal() as db:
        stored = db.scalar(
            select(StripeSubscription).where(
                StripeSubscription.stripe_subscription_id == subscription["id"]
            )
        )
        assert stored.patient_id == patient["id"]
        assert stored.price_id == "price_monthly"

    canceled = {**subscription, "status": "canceled", "canceled_at": int(time.time())}
    response = post_stripe_event(_event("customer.subscription.deleted", canceled))
    assert response.status_code == 200, response.text

    inactive = api_client.get(f"/api/v1/patients/{patient['id']}", headers=auth_headers).json()
    assert inactive["status"] == "inactive"
    assert "activemember" not in inactive["membership_hashtags"]


def test_stripe_invoice_paid_creates_local_invoice(
    api_client, auth_headers, create_patient, post_stripe_event
):
    patient = create_patient()
    stripe_invoice = {
        "id": f"in_{uuid4().hex[:14]}",
        "object": "invoice",
        "customer": f"cus_{uuid4().hex[:14]}",
        "customer_email": patient["email"],
        "status": "paid",
        "currency": "usd",
        "subtotal": 29900,
        "tax": 0,
        "total": 29900,
        "lines": {"data": [{"description": "Tirzepatide", "amount": 29900, "quantity": 1}]},
    }
    response = post_stripe_event(_event("invoice.paid", stripe_invoice))
    assert response.status_code == 200, response.text

    invoices = _patient_invoices(api_client, auth_headers, patient["id"])
    assert len(invoices) == 1
    assert invoices[0]["stripe_invoice_id"] == stripe_invoice["id"]
    assert invoices[0]["status"] == "paid"
    assert invoices[0]["total_cents"] == 29900
    refreshed = api_client.get(f"/api/v1/patients/{patient['id']}", headers=auth_headers).json()
    assert refreshed["status"] == "qualified"


def test_unmatched_checkout_is_queued(post_stripe_event):
    session = {
        "id": f"cs_{uuid4().hex[:14]}",
        "object": "checkout.session",
        "customer": f"cus_{uuid4().hex[:14]}",
        "customer_details": {"email": f"walkin-{uuid4().hex[:8]}@example.com"},
        "payment_intent": f"pi_{uuid4().hex[:16]}",
        "payment_status": "paid",
        "amount_total": 19900,
        "currency": "usd",
    }
    response = post_stripe_event(_event("checkout.session.completed", session))
    assert response.status_code == 200, response.text

    with SessionLocal() as db:
        mirror = db.scalar(
            select(ExternalPaymentMirror).where(
                ExternalPaymentMirror.charge_id == session["payment_intent"]
            )
        )
        assert mirror is not None
        assert mirror.mode == MirrorMode.unmatched
        assert mirror.amount_cents == 19900


def test_unhandled_event_type_is_acknowledged(post_stripe_event):
    event = _event("product.created", {"id": "prod_1", "object": "product"})
    response = post_stripe_event(event)
    assert response.status_code == 200, response.text
    assert _stored_event(event["id"]).processed is True


def test_processing_failure_returns_500_and_can_be_reprocessed(
    monkeypatch, api_client, auth_headers, create_patient, post_stripe_event
):
    def broken(db, obj):
        raise RuntimeError("ledger unavailable")

    patient = create_patient()
    event = _event("charge.succeeded", _charge(patient["email"]))
    monkeypatch.setitem(stripe_events.HANDLERS, "charge.succeeded", broken)
    response = post_stripe_event(event)
    assert response.status_code == 500
    assert response.json()["detail"] == "Webhook processing failed"

    stored = _stored_event(event["id"])
    assert stored.processed is False
    assert stored.error_message == "ledger unavailable"
    assert _patient_invoices(api_client, auth_headers, patient["id"]) == []

    monkeypatch.undo()
    retried = api_client.post(f"/api/v1/webhooks/events/{stored.id}/reprocess", headers=auth_headers)
    assert retried.status_code == 200, retried.text
    assert retried.json()["processed"] is True
    assert retried.json()["error_message"] is None
    assert len(_patient_invoices(api_client, auth_headers, patient["id"])) == 1


def _stripe_invoice(email: str, *, status: str, total: int = 9900, **extra) -> dict:
    obj = {
        "id": f"in_{uuid4().hex[:14]}",
        "object": "invoice",
        "customer": f"cus_{uuid4().hex[:14]}",
        "customer_email": email,
        "status": status,
        "currency": "usd",
        "subtotal": total,
        "tax": 0,
        "total": total,
        "lines": {"data": [{"description": "Semaglutide", "amount": total, "quantity": 1}]},
    }
    obj.update(extra)
    return obj


def _invoice_detail(api_client, headers, invoice_id):
    response = api_client.get(f"/api/v1/invoices/{invoice_id}", headers=headers)
    assert response.status_code == 200, response.text
    return response.json()


@pytest.mark.parametrize(
    "late_type, late_status",
    [("invoice.finalized", "open"), ("invoice.created", "draft"), ("invoice.payment_failed", "open")],
)
def test_late_invoice_snapshot_does_not_reopen_paid_invoice(
    api_client, auth_headers, create_patient, post_stripe_event, late_type, late_status
):
    patient = create_patient()
    paid = _stripe_invoice(patient["email"], status="paid")
    assert post_stripe_event(_event("invoice.paid", paid)).status_code == 200

    late = {**paid, "status": late_status}
    response = post_stripe_event(_event(late_type, late))
    assert response.status_code == 200, response.text

    invoices = _patient_invoices(api_client, auth_headers, patient["id"])
    assert len(invoices) == 1
    assert invoices[0]["status"] == "paid"


def test_late_open_snapshot_does_not_reopen_voided_invoice(
    api_client, auth_headers, create_patient, post_stripe_event
):
    patient = create_patient()
    stripe_invoice = _stripe_invoice(patient["email"], status="open")
    assert post_stripe_event(_event("invoice.finalized", stripe_invoice)).status_code == 200
    voided = {**stripe_invoice, "status": "void"}
    assert post_stripe_event(_event("invoice.voided", voided)).status_code == 200
    assert post_stripe_event(_event("invoice.finalized", stripe_invoice)).status_code == 200

    invoices = _patient_invoices(api_client, auth_headers, patient["id"])
    assert [invoice["status"] for invoice in invoices] == ["void"]


def test_charge_before_its_invoice_keeps_a_single_invoice(
    api_client, auth_headers, create_patient, post_stripe_event
):
    patient = create_patient()
    stripe_invoice = _stripe_invoice(patient["email"], status="paid")
    charge = _charge(
        patient["email"],
        amount=9900,
        customer=stripe_invoice["customer"],
        invoice=stripe_invoice["id"],
    )
    assert post_stripe_event(_event("charge.succeeded", charge)).status_code == 200
    assert post_stripe_event(_event("invoice.paid", stripe_invoice)).status_code == 200
    finalized = {**stripe_invoice, "status": "open"}
    assert post_stripe_event(_event("invoice.finalized", finalized)).status_code == 200

    invoices = _patient_invoices(api_client, auth_headers, patient["id"])
    assert len(invoices) == 1
    invoice = invoices[0]
    assert invoice["stripe_invoice_id"] == stripe_invoice["id"]
    assert invoice["status"] == "paid"
    assert invoice["total_cents"] == 9900
    assert invoice["amount_paid_cents"] == 9900


def test_charge_failed_records_attempt_on_stripe_invoice(
    api_client, auth_headers, create_patient, post_stripe_event
):
    patient = create_patient()
    stripe_invoice = _stripe_invoice(patient["email"], status="open")
    assert post_stripe_event(_event("invoice.finalized", stripe_invoice)).status_code == 200

    failed = _charge(
        patient["email"],
        amount=9900,
        invoice=stripe_invoice["id"],
        status="failed",
        paid=False,
        failure_code="card_declined",
    )
    response = post_stripe_event(_event("charge.failed", failed))
    assert response.status_code == 200, response.text

    invoice = _patient_invoices(api_client, auth_headers, patient["id"])[0]
    assert invoice["status"] == "open"
    detail = _invoice_detail(api_client, auth_headers, invoice["id"])
    assert detail["payments"][0]["status"] == "failed"
    assert detail["payments"][0]["stripe_charge_id"] == failed["id"]
    assert detail["amount_paid_cents"] == 0


def test_charge_failed_without_invoice_is_only_logged(post_stripe_event):
    event = _event("charge.failed", _charge("someone@example.com", status="failed"))
    response = post_stripe_event(event)
    assert response.status_code == 200, response.text
    assert _stored_event(event["id"]).processed is True


@pytest.mark.parametrize(
    "event_type, expected",
    [("invoice.voided", "void"), ("invoice.marked_uncollectible", "uncollectible")],
)
def test_invoice_closed_out_in_stripe(
    api_client, auth_headers, create_patient, post_stripe_event, event_type, expected
):
    patient = create_patient()
    stripe_invoice = _stripe_invoice(patient["email"], status="open")
    assert post_stripe_event(_event("invoice.finalized", stripe_invoice)).status_code == 200
    response = post_stripe_event(_event(event_type, {**stripe_invoice, "status": expected}))
    assert response.status_code == 200, response.text

    invoices = _patient_invoices(api_client, auth_headers, patient["id"])
    assert [invoice["status"] for invoice in invoices] == [expected]


def _dispute(charge: dict, status: str) -> dict:
    return {
        "id": f"dp_{uuid4().hex[:14]}",
        "object": "dispute",
        "charge": charge["id"],
        "amount": charge["amount"],
        "status": status,
        "reason": "fraudulent",
    }


def test_dispute_created_marks_payment_disputed(api_client, auth_headers, paid_patient, post_stripe_event):
    patient, charge, _, _ = paid_patient
    response = post_stripe_event(_event("charge.dispute.created", _dispute(charge, "needs_response")))
    assert response.status_code == 200, response.text

    invoice = _patient_invoices(api_client, auth_headers, patient["id"])[0]
    detail = _invoice_detail(api_client, auth_headers, invoice["id"])
    assert detail["payments"][0]["status"] == "disputed"


@pytest.mark.parametrize(
    "outcome, payment_status, invoice_status, refunded",
    [("won", "succeeded", "paid", 0), ("lost", "refunded", "refunded", 5000)],
)
def test_dispute_closed(
    api_client,
    auth_headers,
    paid_patient,
    post_stripe_event,
    outcome,
    payment_status,
    invoice_status,
    refunded,
):
    patient, charge, _, _ = paid_patient
    dispute = _dispute(charge, "needs_response")
    assert post_stripe_event(_event("charge.dispute.created", dispute)).status_code == 200
    closed = {**dispute, "status": outcome}
    response = post_stripe_event(_event("charge.dispute.closed", closed))
    assert response.status_code == 200, response.text

    invoice = _patient_invoices(api_client, auth_headers, patient["id"])[0]
    assert invoice["status"] == invoice_status
    assert invoice["amount_refunded_cents"] == refunded
    detail = _invoice_detail(api_client, auth_headers, invoice["id"])
    assert detail["payments"][0]["status"] == payment_status


def test_customer_events_link_patient_once(api_client, auth_headers, create_patient, post_stripe_event):
    patient = create_patient()
    customer = {"id": f"cus_{uuid4().hex[:14]}", "object": "customer", "email": patient["email"]}
    response = post_stripe_event(_event("customer.created", customer))
    assert response.status_code == 200, response.text
    linked = api_client.get(f"/api/v1/patients/{patient['id']}", headers=auth_headers).json()
    assert linked["stripe_customer_id"] == customer["id"]

    other = {**customer, "id": f"cus_{uuid4().hex[:14]}"}
    response = post_stripe_event(_event("customer.updated", other))
    assert response.status_code == 200, response.text
    unchanged = api_client.get(f"/api/v1/patients/{patient['id']}", headers=auth_headers).json()
    assert unchanged["stripe_customer_id"] == customer["id"]


def test_payment_intent_succeeded_qualifies_without_recording(
    api_client, auth_headers, create_patient, post_stripe_event
):
    patient = create_patient()
    assert patient["status"] == "pending"
    intent = {
        "id": f"pi_{uuid4().hex[:16]}",
        "object": "payment_intent",
        "amount": 5000,
        "currency": "usd",
        "status": "succeeded",
        "customer": f"cus_{uuid4().hex[:14]}",
        "receipt_email": patient["email"],
    }
    response = post_stripe_event(_event("payment_intent.succeeded", intent))
    assert response.status_code == 200, response.text

    refreshed = api_client.get(f"/api/v1/patients/{patient['id']}", headers=auth_headers).json()
    assert refreshed["status"] == "qualified"
    assert refreshed["stripe_customer_id"] == intent["customer"]
    assert _patient_invoices(api_client, auth_headers, patient["id"]) == []


@pytest.mark.parametrize(
    "event_type, payment_status, invoice_status",
    [
        ("payment_intent.payment_failed", "failed", "open"),
        ("payment_intent.processing", "pending", "open"),
    ],
)
def test_payment_intent_status_updates_known_payment(
    api_client,
    auth_headers,
    paid_patient,
    post_stripe_event,
    event_type,
    payment_status,
    invoice_status,
):
    patient, charge, _, _ = paid_patient
    intent = {"id": charge["payment_intent"], "object": "payment_intent", "status": "requires_payment_method"}
    response = post_stripe_event(_event(event_type, intent))
    assert response.status_code == 200, response.text

    invoice = _patient_invoices(api_client, auth_headers, patient["id"])[0]
    assert invoice["status"] == invoice_status
    detail = _invoice_detail(api_client, auth_headers, invoice["id"])
    assert detail["payments"][0]["status"] == payment_status


def test_payment_intent_failure_for_unknown_intent_is_logged(post_stripe_event):
    intent = {"id": f"pi_{uuid4().hex[:16]}", "object": "payment_intent", "status": "requires_payment_method"}
    event = _event("payment_intent.payment_failed", intent)
    response = post_stripe_event(event)
    assert response.status_code == 200, response.text
    assert _stored_event(event["id"]).processed is True


def test_matched_checkout_then_charge_is_recorded_once(
    api_client, auth_headers, create_patient, post_stripe_event
):
    patient = create_patient()
    intent_id = f"pi_{uuid4().hex[:16]}"
    session = {
        "id": f"cs_{uuid4().hex[:14]}",
        "object": "checkout.session",
        "customer": f"cus_{uuid4().hex[:14]}",
        "customer_details": {"email": patient["email"], "name": "Maria Lopez"},
        "payment_intent": intent_id,
        "payment_status": "paid",
        "amount_total": 19900,
        "currency": "usd",
    }
    response = post_stripe_event(_event("checkout.session.completed", session))
    assert response.status_code == 200, response.text

    refreshed = api_client.get(f"/api/v1/patients/{patient['id']}", headers=auth_headers).json()
    assert refreshed["stripe_customer_id"] == session["customer"]
    assert refreshed["status"] == "qualified"

    charge = _charge(
        patient["email"], amount=19900, customer=session["customer"], payment_intent=intent_id
    )
    response = post_stripe_event(_event("charge.succeeded", charge))
    assert response.status_code == 200, response.text

    invoices = _patient_invoices(api_client, auth_headers, patient["id"])
    assert len(invoices) == 1
    assert invoices[0]["amount_paid_cents"] == 19900
    detail = _invoice_detail(api_client, auth_headers, invoices[0]["id"])
    assert len(detail["payments"]) == 1
    assert detail["payments"][0]["stripe_charge_id"] == charge["id"]
    assert detail["payments"][0]["stripe_payment_intent_id"] == intent_id


@pytest.fixture()
def mirroring(monkeypatch):
    monkeypatch.setattr(settings, "stripe_mirror_external_payments", True)
    monkeypatch.setattr(settings, "stripe_secret_key", "sk_test_mirror")
    calls: list[tuple[str, str]] = []

    def recorder(name, result=None):
        def _call(*args, **kwargs):
            calls.append((name, kwargs.get("idempotency_key")))
            return result

        return _call

    monkeypatch.setattr(stripe.InvoiceItem, "create", recorder("item", SimpleNamespace(id="ii_1")))
    monkeypatch.setattr(stripe.Invoice, "create", recorder("invoice", SimpleNamespace(id="in_mirrored")))
    monkeypatch.setattr(stripe.Invoice, "finalize_invoice", recorder("finalize"))
    monkeypatch.setattr(stripe.Invoice, "pay", recorder("pay"))
    return calls


def _mirror_row(charge_id: str) -> ExternalPaymentMirror | None:
    with SessionLocal() as db:
        return db.scalar(
            select(ExternalPaymentMirror).where(ExternalPaymentMirror.charge_id == charge_id)
        )


def test_external_charge_is_mirrored_into_stripe_invoice(
    api_client, auth_headers, create_patient, post_stripe_event, mirroring
):
    patient = create_patient()
    charge = _charge(patient["email"], amount=7500)
    response = post_stripe_event(_event("charge.succeeded", charge))
    assert response.status_code == 200, response.text

    key = f"mirror:{charge['id']}"
    assert mirroring == [
        ("item", f"{key}-item"),
        ("invoice", f"{key}-invoice"),
        ("finalize", f"{key}-finalize"),
        ("pay", f"{key}-pay"),
    ]
    mirror = _mirror_row(charge["id"])
    assert mirror.mode == MirrorMode.created_invoice
    assert mirror.created_invoice_id == "in_mirrored"
    assert mirror.matched_patient_id == patient["id"]

    invoices = _patient_invoices(api_client, auth_headers, patient["id"])
    assert len(invoices) == 1
    assert invoices[0]["stripe_invoice_id"] == "in_mirrored"


def test_mirror_failure_is_kept_for_review(
    monkeypatch, api_client, auth_headers, create_patient, post_stripe_event, mirroring
):
    def declined(*args, **kwargs):
        raise stripe.StripeError("invoice items are locked")

    monkeypatch.setattr(stripe.InvoiceItem, "create", declined)
    patient = create_patient()
    charge = _charge(patient["email"], amount=7500)
    response = post_stripe_event(_event("charge.succeeded", charge))
    assert response.status_code == 200, response.text

    mirror = _mirror_row(charge["id"])
    assert mirror.mode == MirrorMode.failed
    assert "invoice items are locked" in mirror.note
    invoices = _patient_invoices(api_client, auth_headers, patient["id"])
    assert len(invoices) == 1
    assert invoices[0]["stripe_invoice_id"] is None
    assert invoices[0]["amount_paid_cents"] == 7500


def test_platform_charge_is_not_mirrored(create_patient, post_stripe_event, mirroring):
    patient = create_patient()
    charge = _charge(patient["email"], metadata={"platform": settings.stripe_platform_tag})
    response = post_stripe_event(_event("charge.succeeded", charge))
    assert response.status_code == 200, response.text
    assert mirroring == []
    assert _mirror_row(charge["id"]) is None


def test_stored_failure_message_is_redacted(monkeypatch, create_patient, post_stripe_event):
    def broken(db, obj):
        raise RuntimeError(f"duplicate key (email)=({obj['email']})")

    patient = create_patient()
    event = _event("charge.succeeded", _charge(patient["email"]))
    monkeypatch.setitem(stripe_events.HANDLERS, "charge.succeeded", broken)
    response = post_stripe_event(event)
    assert response.status_code == 500

    stored = _stored_event(event["id"])
    assert stored.processed is False
    assert patient["email"] not in stored.error_message
    assert stored.error_message.startswith("duplicate key (email)=(")
