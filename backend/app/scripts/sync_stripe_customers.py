from __future__ import annotations

import argparse
import time

import stripe
from sqlalchemy import select

from app.db.session import SessionLocal
from app.models.patient import Patient
from app.services import stripe_client
from app.services.audit import log_event
from app.services.patients import find_patient_by_stripe_customer


def ensure_customer(patient: Patient) -> tuple[str, bool]:
    """Return ``(customer_id, created)`` for the patient, reusing an e-mail match."""
    customer_id = stripe_client.find_customer_by_email(patient.email)
    if customer_id:
        return customer_id, False
    customer_id = stripe_client.create_customer(
        email=patient.email, name=patient.full_name, patient_code=patient.patient_id
    )
    return customer_id, True


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Create or link Stripe customers for patients without one."
    )
    parser.add_argument("--limit", type=int, default=500)
    parser.add_argument(
        "--sleep", type=float, default=0.2, help="Seconds to wait between Stripe API calls."
    )
    parser.add_argument("--apply", action="store_true", help="Write changes to the database.")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Preview changes without writing (default).",
    )
    args = parser.parse_args()
    apply = args.apply and not args.dry_run

    session = SessionLocal()
    try:
        stmt = (
            select(Patient)
            .where(Patient.stripe_customer_id.is_(None), Patient.deleted_at.is_(None))
            .order_by(Patient.id.asc())
            .limit(args.limit)
        )
        patients = list(session.scalars(stmt))
        linked = created = conflicts = errors = 0
        if apply:
            for index, patient in enumerate(patients):
                if index and args.sleep:
                    time.sleep(args.sleep)
                try:
                    customer_id, was_created = ensure_customer(patient)
                except stripe.StripeError as exc:
                    errors += 1
                    print(f"  {patient.patient_id}: Stripe error {exc.__class__.__name__}")
                    continue
                owner = find_patient_by_stripe_customer(session, customer_id)
                if owner is not None and owner.id != patient.id:
                    conflicts += 1
                    print(f"  {patient.patient_id}: customer already linked to {owner.patient_id}")
                    continue
                patient.stripe_customer_id = customer_id
                log_event(
                    session,
                    actor=None,
                    action="patient.stripe_customer_linked",
                    entity_type="patient",
                    entity_id=str(patient.id),
                    origin="script",
                    after_data={"stripe_customer_id": customer_id, "created": was_created},
                )
                session.commit()
                if was_created:
                    created += 1
                else:
                    linked += 1
        print("Stripe customer sync")
        print(f"Candidates: {len(patients)}")
        if apply:
            print(f"Customers: linked={linked} created={created} conflicts={conflicts} errors={errors}")
        else:
            print("Dry run only. Use --apply to persist changes.")
        return 0
    except Exception as exc:
        session.rollback()
        raise exc
    finally:
        session.close()


if __name__ == "__main__":
    raise SystemExit(main())
