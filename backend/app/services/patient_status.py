from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from app.models.patient import Patient, PatientStatus
from app.models.user import User
from app.services.audit import log_event

logger = logging.getLogger("eonmeds.patients.status")

# Older scripts wrote "client" for paying patients; it means qualified.
LEGACY_STATUS_ALIASES = {
    "client": PatientStatus.qualified,
}

ALLOWED_TRANSITIONS: dict[PatientStatus, frozenset[PatientStatus]] = {
    PatientStatus.pending: frozenset(
        {PatientStatus.qualified, PatientStatus.rejected, PatientStatus.archived}
    ),
    PatientStatus.qualified: frozenset(
        {PatientStatus.active, PatientStatus.inactive, PatientStatus.archived}
    ),
    PatientStatus.active: frozenset({PatientStatus.inactive, PatientStatus.archived}),
    PatientStatus.inactive: frozenset(
        {PatientStatus.active, PatientStatus.qualified, PatientStatus.archived}
    ),
    PatientStatus.rejected: frozenset({PatientStatus.pending, PatientStatus.archived}),
    PatientStatus.archived: frozenset(),
}


class InvalidStatusTransition(Exception):
    def __init__(self, current: PatientStatus, target: PatientStatus) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid status transition: {current.value} -> {target.value}")


def coerce_status(value: str | PatientStatus | None) -> PatientStatus:
    if isinstance(value, PatientStatus):
        return value
    cleaned = (value or "").strip().lower()
    if cleaned in LEGACY_STATUS_ALIASES:
        return LEGACY_STATUS_ALIASES[cleaned]
    try:
        return PatientStatus(cleaned)
    except ValueError:
        raise ValueError(f"Unknown patient status: {value!r}") from None


def can_transition(current: PatientStatus, target: PatientStatus) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS[current]


def transition_status(
    db: Session,
    patient: Patient,
    target: PatientStatus,
    *,
    actor: User | None = None,
    reason: str | None = None,
    origin: str = "api",
    request_id: str | None = None,
    ip_address: str | None = None,
) -> bool:
    """Move a patient to ``target``; the only writer of ``Patient.status``.

    Returns ``False`` when the patient is already in ``target`` (stored value
    is rewritten if it was a legacy alias). Raises ``InvalidStatusTransition``
    when the state machine forbids the move.
    """
    current = coerce_status(patient.status)
    if current == target:
        if patient.status != target.value:
            patient.status = target.value
        return False
    if not can_transition(current, target):
        raise InvalidStatusTransition(current, target)

    patient.status = target.value
    if actor is not None:
        patient.reviewed_by_user_id = actor.id
        patient.reviewed_at = datetime.now(timezone.utc)
        patient.updated_by_user_id = actor.id
    log_event(
        db,
        actor=actor,
        action="patient.status",
        entity_type="patient",
        entity_id=str(patient.id),
        origin=origin,
        before_data={"status": current.value},
        after_data={"status": target.value, "reason": reason},
        request_id=request_id,
        ip_address=ip_address,
    )
    logger.info("Patient %s status %s -> %s", patient.patient_id, current.value, target.value)
    return True


def advance_status(
    db: Session,
    patient: Patient,
    target: PatientStatus,
    *,
    reason: str,
    origin: str,
) -> bool:
    """Best-effort transition used by webhook reconciliation.

    Forbidden moves are logged and skipped instead of raised so that a payment
    for an archived patient does not fail the whole event.
    """
    try:
        return transition_status(db, patient, target, reason=reason, origin=origin)
    except (InvalidStatusTransition, ValueError) as exc:
        logger.info("Skipping status change for %s: %s", patient.patient_id, exc)
        return False


def normalize_stored_status(
    db: Session,
    patient: Patient,
    *,
    fallback: PatientStatus = PatientStatus.qualified,
    origin: str = "script",
) -> bool:
    """Rewrite a legacy or unknown stored status to its canonical value.

    Known aliases map through ``LEGACY_STATUS_ALIASES``; anything else becomes
    ``fallback``. Returns ``True`` when the stored value changed.
    """
    stored = patient.status
    try:
        target = coerce_status(stored)
    except ValueError:
        target = fallback
    if stored == target.value:
        return False
    patient.status = target.value
    log_event(
        db,
        actor=None,
        action="patient.status",
        entity_type="patient",
        entity_id=str(patient.id),
        origin=origin,
        before_data={"status": stored},
        after_data={"status": target.value, "reason": "normalized stored status"},
    )
    logger.info("Patient %s status %r normalized to %s", patient.patient_id, stored, target.value)
    return True
