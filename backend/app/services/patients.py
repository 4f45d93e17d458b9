from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.models.patient import Patient, PatientStatus
from app.services.normalize import normalize_email


def format_patient_code(patient_id: int) -> str:
    return f"P{patient_id:04d}"


def get_patient_by_ref(db: Session, ref: str | int, *, include_deleted: bool = False) -> Patient | None:
    """Look a patient up by numeric primary key or by display code (``P0001``)."""
    text = str(ref).strip()
    if text.isdigit():
        patient = db.get(Patient, int(text))
    else:
        patient = db.scalar(select(Patient).where(Patient.patient_id == text.upper()))
    if patient is None:
        return None
    if patient.deleted_at is not None and not include_deleted:
        return None
    return patient


def find_patient_by_email(db: Session, email: str | None) -> Patient | None:
    normalized = normalize_email(email)
    if not normalized:
        return None
    return db.scalar(select(Patient).where(func.lower(Patient.email) == normalized))


def find_patient_by_stripe_customer(db: Session, customer_id: str | None) -> Patient | None:
    if not customer_id:
        return None
    return db.scalar(select(Patient).where(Patient.stripe_customer_id == customer_id))


def insert_patient(db: Session, patient: Patient) -> Patient:
    if not patient.status:
        patient.status = PatientStatus.pending.value
    db.add(patient)
    db.flush()
    patient.patient_id = format_patient_code(patient.id)
    return patient
