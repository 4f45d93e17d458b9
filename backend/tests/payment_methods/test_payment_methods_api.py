from uuid import uuid4

import pytest
import stripe

from app.db.session import SessionLocal
from app.models.patient import Patient
from app.services import stripe_client


def _card(payment_method_id: str, customer: str | None, last4: str = "4242") -> dict:
    return {
        "id": payment_method_id,
        "customer": customer,
        "brand": "visa",
        "last4": last4,
        "exp_month": 12,
        "exp_year": 2030,
        "created": 1760000000,
        "is_default": False,
    }


class FakeWallet:
    """In-memory stand-in for the Stripe calls the card endpoints make."""

    def __init__(self):
        self.cards: dict[str, dict] = {}
        self.defaults: dict[str, str] = {}
        self.customers: list[dict] = []
        self.detached: list[str] = []

    def create_customer(self, *, email, name, patient_code):
        self.customers.append({"email": email, "name": name, "patient_code": patient_code})
        return f"cus_{uuid4().hex[:14]}"

    def create_setup_intent(self, customer_id):
        return {"id": "seti_123", "client_secret": f"seti_123_secret_{customer_id}"}

    def list_cards(self, customer_id):
        default_id = self.defaults.get(customer_id)
        return [
            {**card, "is_default": card["id"] == default_id}
            for card in self.cards.values()
            if card["customer"] == customer_id
        ]

    def retrieve_card(self, payment_method_id):
        if payment_method_id not in self.cards:
            raise stripe.InvalidRequestError("No such PaymentMethod", "payment_method")
        return dict(self.cards[payment_method_id])

    def attach_card(self, payment_method_id, customer_id):
        card = self.cards.setdefault(payment_method_id, _card(payment_method_id, None))
        card["customer"] = customer_id
        return dict(card)

    def detach_card(self, payment_method_id):
        self.detached.append(payment_method_id)
        self.cards[payment_method_id]["customer"] = None

    def set_default_card(self, customer_id, payment_method_id):
        self.defaults[customer_id] = payment_method_id


@pytest.fixture()
def wallet(monkeypatch):
    fake = FakeWallet()
    for name in (
        "create_customer",
        "create_setup_intent",
        "list_cards",
        "retrieve_card",
        "attach_card",
        "detach_card",
        "set_default_card",
    ):
        monkeypatch.setattr(stripe_client, name, getattr(fake, name))
    return fake


def _link_customer(patient_id: int) -> str:
    customer_id = f"cus_{uuid4().hex[:14]}"
    with SessionLocal() as db:
        patient = db.get(Patient, patient_id)
        patient.stripe_customer_id = customer_id
        db.commit()
    return customer_id


def _url(patient: dict, suffix: str = "") -> str:
    return f"/api/v1/patients/{patient['id']}/payment-methods{suffix}"


def test_list_without_customer_is_empty(api_client, auth_headers, create_patient, wallet):
    patient = create_patient()
    response = api_client.get(_url(patient), headers=auth_headers)
    assert response.status_code == 200, response.text
    assert response.json() == {
        "patient_id": patient["id"],
        "stripe_customer_id": None,
        "payment_methods": [],
    }


def test_setup_intent_creates_customer_once(api_client, auth_headers, create_patient, wallet):
    patient = create_patient()
    response = api_client.post(_url(patient, "/setup-intent"), headers=auth_headers)
    assert response.status_code == 201, response.text
    body = response.json()
    assert body["setup_intent_id"] == "seti_123"
    customer_id = body["stripe_customer_id"]
    assert body["client_secret"].endswith(customer_id)
    assert wallet.customers == [
        {"email": patient["email"], "name": "Maria Lopez", "patient_code": patient["patient_id"]}
    ]

    again = api_client.post(_url(patient, "/setup-intent"), headers=auth_headers)
    assert again.status_code == 201
    assert again.json()["stripe_customer_id"] == customer_id
    assert len(wallet.customers) == 1

    refreshed = api_client.get(f"/api/v1/patients/{patient['id']}", headers=auth_headers).json()
    assert refreshed["stripe_customer_id"] == customer_id


def test_attach_and_list_cards(api_client, auth_headers, create_patient, wallet):
    patient = create_patient()
    customer_id = _link_customer(patient["id"])

    first = api_client.post(
        _url(patient), json={"payment_method_id": "pm_visa", "set_as_default": True}, headers=auth_headers
    )
    assert first.status_code == 201, first.text
    assert first.json()["is_default"] is True
    assert first.json()["last4"] == "4242"
    assert wallet.defaults[customer_id] == "pm_visa"

    second = api_client.post(_url(patient), json={"payment_method_id": "pm_backup"}, headers=auth_headers)
    assert second.status_code == 201, second.text
    assert second.json()["is_default"] is False

    listed = api_client.get(_url(patient), headers=auth_headers).json()
    assert listed["stripe_customer_id"] == customer_id
    by_id = {card["id"]: card for card in listed["payment_methods"]}
    assert set(by_id) == {"pm_visa", "pm_backup"}
    assert by_id["pm_visa"]["is_default"] is True
    assert by_id["pm_backup"]["is_default"] is False

    trail = api_client.get(f"/api/v1/audit?entity_type=patient&entity_id={patient['id']}", headers=auth_headers)
    assert trail.status_code == 200, trail.text
    assert "payment_method.attached" in {entry["action"] for entry in trail.json()}


def test_attach_requires_customer(api_client, auth_headers, create_patient, wallet):
    patient = create_patient()
    response = api_client.post(_url(patient), json={"payment_method_id": "pm_visa"}, headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["detail"] == "Patient does not have a Stripe customer"


def test_set_default_card(api_client, auth_headers, create_patient, wallet):
    patient = create_patient()
    customer_id = _link_customer(patient["id"])
    wallet.cards["pm_new"] = _card("pm_new", customer_id, last4="1881")

    response = api_client.put(_url(patient, "/pm_new/default"), headers=auth_headers)
    assert response.status_code == 200, response.text
    assert response.json()["is_default"] is True
    assert wallet.defaults[customer_id] == "pm_new"


def test_cards_of_other_customers_are_hidden(api_client, auth_headers, create_patient, wallet):
    patient = create_patient()
    _link_customer(patient["id"])
    wallet.cards["pm_foreign"] = _card("pm_foreign", "cus_someone_else")

    response = api_client.delete(_url(patient, "/pm_foreign"), headers=auth_headers)
    assert response.status_code == 404
    assert response.json()["detail"] == "Payment method not found"
    assert wallet.detached == []

    default = api_client.put(_url(patient, "/pm_foreign/default"), headers=auth_headers)
    assert default.status_code == 404


def test_detach_card(api_client, auth_headers, create_patient, wallet):
    patient = create_patient()
    customer_id = _link_customer(patient["id"])
    wallet.cards["pm_old"] = _card("pm_old", customer_id)

    response = api_client.delete(_url(patient, "/pm_old"), headers=auth_headers)
    assert response.status_code == 204
    assert wallet.detached == ["pm_old"]
    assert api_client.get(_url(patient), headers=auth_headers).json()["payment_methods"] == []


def test_unknown_payment_method_is_bad_request(api_client, auth_headers, create_patient, wallet):
    patient = create_patient()
    _link_customer(patient["id"])
    response = api_client.delete(_url(patient, "/pm_missing"), headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["detail"] == "No such PaymentMethod"


def test_stripe_outage_maps_to_bad_gateway(monkeypatch, api_client, auth_headers, create_patient):
    patient = create_patient()
    _link_customer(patient["id"])

    def down(customer_id):
        raise stripe.APIConnectionError("connection reset")

    monkeypatch.setattr(stripe_client, "list_cards", down)
    response = api_client.get(_url(patient), headers=auth_headers)
    assert response.status_code == 502
    assert response.json()["detail"] == "Stripe request failed"


def test_card_endpoints_require_billing_role(api_client, doctor_headers, create_patient, wallet):
    patient = create_patient()
    assert api_client.get(_url(patient), headers=doctor_headers).status_code == 403
    response = api_client.post(_url(patient, "/setup-intent"), headers=doctor_headers)
    assert response.status_code == 403
