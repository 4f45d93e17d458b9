from __future__ import annotations

import argparse

from sqlalchemy import or_, select

from app.db.session import SessionLocal
from app.models.patient import Patient
from app.models.webhook_event import WebhookEvent, WebhookSource
from app.services.audit import log_event
from app.services.heyflow import HeyFlowPayloadError, map_submission

ADDRESS_FIELDS = (
    "address",
    "address_house",
    "address_street",
    "apartment_number",
    "city",
    "state",
    "zip",
)


def latest_submission(session, patient: Patient) -> WebhookEvent | None:
    return session.scalar(
        select(WebhookEvent)
        .where(
            WebhookEvent.source == WebhookSource.heyflow,
            WebhookEvent.patient_id == patient.id,
            WebhookEvent.processed.is_(True),
        )
        .order_by(WebhookEvent.received_at.desc(), WebhookEvent.id.desc())
        .limit(1)
    )


def missing_address_fields(patient: Patient) -> list[str]:
    return [name for name in ADDRESS_FIELDS if not getattr(patient, name)]


def backfill_patient(session, patient: Patient, apply: bool) -> dict[str, str]:
    missing = missing_address_fields(patient)
    if not missing:
        return {}
    event = latest_submission(session, patient)
    if event is None:
        return {}
    try:
        submission = map_submission(event.payload)
    except HeyFlowPayloadError:
        return {}
    updates = {
        name: submission.patient_fields[name]
        for name in missing
        if submission.patient_fields.get(name)
    }
    if updates and apply:
        before = {name: getattr(patient, name) for name in updates}
        for name, value in updates.items():
            setattr(patient, name, value)
        log_event(
            session,
            actor=None,
            action="patient.address_backfilled",
            entity_type="patient",
            entity_id=str(patient.id),
            origin="script",
            before_data=before,
            after_data=updates,
        )
    return updates


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Fill empty address columns from each patient's latest HeyFlow submission."
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
        stmt = select(Patient).where(
            Patient.deleted_at.is_(None),
            or_(*[getattr(Patient, name).is_(None) for name in ADDRESS_FIELDS]),
        )
        updated = 0
        skipped = 0
        for patient in session.scalars(stmt).all():
            updates = backfill_patient(session, patient, apply)
            if updates:
                updated += 1
                print(f"  {patient.patient_id}: {', '.join(sorted(updates))}")
            else:
                skipped += 1
        if apply:
            session.commit()
        print("Address backfill")
        print(f"Patients: updated={updated} skipped={skipped}")
        if not apply:
            print("Dry run only. Use --apply to persist changes.")
        return 0
    except Exception as exc:
        session.rollback()
        raise exc
    finally:
        session.close()


if __name__ == "__main__":
    raise SystemExit(main())
