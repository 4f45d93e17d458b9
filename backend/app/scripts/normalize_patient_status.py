from __future__ import annotations

import argparse

from sqlalchemy import select

from app.db.session import SessionLocal
from app.models.patient import Patient, PatientStatus
from app.services.patient_status import normalize_stored_status

CANONICAL_STATUSES = [status.value for status in PatientStatus]


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Rewrite legacy patient status values (e.g. 'client') to canonical ones."
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
        stmt = select(Patient).where(Patient.status.not_in(CANONICAL_STATUSES))
        patients = list(session.scalars(stmt))
        changes: dict[str, int] = {}
        for patient in patients:
            changes[patient.status] = changes.get(patient.status, 0) + 1
            if apply:
                normalize_stored_status(session, patient)
        if apply:
            session.commit()
        print("Patient status normalization")
        print(f"Patients: {len(patients)}")
        for value, count in sorted(changes.items()):
            print(f"  {value!r}: {count}")
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
