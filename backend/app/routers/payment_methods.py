import logging
from typing import Any, Callable

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.deps import client_ip, require_roles
from app.models.patient import Patient
from app.models.user import Role, User
from app.routers.patients import load_patient
from app.schemas.payment_method import CardAttach, CardListOut, CardOut, SetupIntentOut
from app.services import stripe_client
from app.services.audit import log_event

logger = logging.getLogger("eonmeds.payment_methods")

router = APIRouter(prefix="/patients", tags=["payment-methods"])

BILLING_ROLES = (Role.admin.value, Role.provider.value)


def _stripe(call: Callable[..., Any], *args, **kwargs) -> Any:
    try:
        return call(*args, **kwargs)
    except stripe_client.StripeNotConfigured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Stripe is not configured"
        )
    except stripe.InvalidRequestError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=exc.user_message or str(exc)
        )
    except stripe.StripeError as exc:
        logger.warning("Stripe call %s failed: %s", call.__name__, exc.__class__.__name__)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Stripe request failed")


def _require_customer(patient: Patient) -> str:
    if not patient.stripe_customer_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Patient does not have a Stripe customer",
        )
    return patient.stripe_customer_id


def _owned_card(patient: Patient, payment_method_id: str) -> dict[str, Any]:
    customer_id = _require_customer(patient)
    card = _stripe(stripe_client.retrieve_card, payment_method_id)
    if card["customer"] != customer_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment method not found")
    return card


def _audit(db: Session, patient: Patient, user: User, action: str, request: Request, request_id, **data):
    log_event(
        db,
        actor=user,
        action=action,
        entity_type="patient",
        entity_id=str(patient.id),
        after_data=data,
        request_id=request_id,
        ip_address=client_ip(request),
    )


@router.get("/{patient_ref}/payment-methods", response_model=CardListOut)
def list_payment_methods(
    patient_ref: str,
    db: Session = Depends(get_db),
    _user: User = Depends(require_roles(*BILLING_ROLES)),
):
    patient = load_patient(db, patient_ref)
    cards = []
    if patient.stripe_customer_id:
        cards = _stripe(stripe_client.list_cards, patient.stripe_customer_id)
    return CardListOut(
        patient_id=patient.id,
        stripe_customer_id=patient.stripe_customer_id,
        payment_methods=[CardOut(**card) for card in cards],
    )


@router.post(
    "/{patient_ref}/payment-methods/setup-intent",
    response_model=SetupIntentOut,
    status_code=status.HTTP_201_CREATED,
)
def create_setup_intent(
    patient_ref: str,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*BILLING_ROLES)),
    request_id: str | None = Header(default=None),
):
    """Start saving a card; the client confirms the intent with Stripe.js."""
    patient = load_patient(db, patient_ref)
    if not patient.stripe_customer_id:
        patient.stripe_customer_id = _stripe(
            stripe_client.create_customer,
            email=patient.email,
            name=patient.full_name,
            patient_code=patient.patient_id or str(patient.id),
        )
        _audit(
            db,
            patient,
            user,
            "patient.stripe_customer_linked",
            request,
            request_id,
            stripe_customer_id=patient.stripe_customer_id,
        )
    intent = _stripe(stripe_client.create_setup_intent, patient.stripe_customer_id)
    db.commit()
    return SetupIntentOut(
        setup_intent_id=intent["id"],
        client_secret=intent["client_secret"],
        stripe_customer_id=patient.stripe_customer_id,
    )


@router.post(
    "/{patient_ref}/payment-methods", response_model=CardOut, status_code=status.HTTP_201_CREATED
)
def attach_payment_method(
    patient_ref: str,
    payload: CardAttach,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*BILLING_ROLES)),
    request_id: str | None = Header(default=None),
):
    patient = load_patient(db, patient_ref)
    customer_id = _require_customer(patient)
    card = _stripe(stripe_client.attach_card, payload.payment_method_id, customer_id)
    if payload.set_as_default:
        _stripe(stripe_client.set_default_card, customer_id, card["id"])
        card["is_default"] = True
    _audit(
        db,
        patient,
        user,
        "payment_method.attached",
        request,
        request_id,
        payment_method_id=card["id"],
        last4=card["last4"],
        is_default=card["is_default"],
    )
    db.commit()
    return CardOut(**card)


@router.put("/{patient_ref}/payment-methods/{payment_method_id}/default", response_model=CardOut)
def set_default_payment_method(
    patient_ref: str,
    payment_method_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*BILLING_ROLES)),
    request_id: str | None = Header(default=None),
):
    patient = load_patient(db, patient_ref)
    card = _owned_card(patient, payment_method_id)
    _stripe(stripe_client.set_default_card, patient.stripe_customer_id, payment_method_id)
    card["is_default"] = True
    _audit(
        db,
        patient,
        user,
        "payment_method.default_set",
        request,
        request_id,
        payment_method_id=payment_method_id,
    )
    db.commit()
    return CardOut(**card)


@router.delete(
    "/{patient_ref}/payment-methods/{payment_method_id}", status_code=status.HTTP_204_NO_CONTENT
)
def detach_payment_method(
    patient_ref: str,
    payment_method_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*BILLING_ROLES)),
    request_id: str | None = Header(default=None),
):
    patient = load_patient(db, patient_ref)
    _owned_card(patient, payment_method_id)
    _stripe(stripe_client.detach_card, payment_method_id)
    _audit(
        db,
        patient,
        user,
        "payment_method.detached",
        request,
        request_id,
        payment_method_id=payment_method_id,
    )
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
