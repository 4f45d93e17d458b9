from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.deps import client_ip, get_current_user, require_roles
from app.models.patient import Patient, PatientStatus
from app.models.user import Role, User
from app.models.webhook_event import WebhookEvent, WebhookSource
from app.schemas.patient import (
    HashtagCreate,
    IntakeFieldOut,
    PatientCreate,
    PatientIntakeOut,
    PatientListOut,
    PatientOut,
    PatientStatusUpdate,
    PatientUpdate,
    WeightLossIntakeOut,
)
from app.services.audit import log_event, snapshot_model
from app.services.heyflow import calculate_bmi, intake_display_fields
from app.services.intake_pdf import build_intake_pdf
from app.services.normalize import merge_hashtags, normalize_email, normalize_hashtag, normalize_name
from app.services.patient_status import (
    InvalidStatusTransition,
    normalize_stored_status,
    transition_status,
)
from app.services.patients import find_patient_by_email, get_patient_by_ref, insert_patient
from app.services.states import abbreviate_state

router = APIRouter(prefix="/patients", tags=["patients"])

NAME_FIELDS = {"first_name", "last_name"}
REQUIRED_FIELDS = {"first_name", "last_name", "email", "language"}


def load_patient(db: Session, patient_ref: str) -> Patient:
    patient = get_patient_by_ref(db, patient_ref)
    if patient is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Patient not found")
    return patient


def _clean_value(key: str, value):
    if key in NAME_FIELDS:
        return normalize_name(value)
    if key == "email":
        return normalize_email(value)
    if key == "state":
        return abbreviate_state(value)
    if isinstance(value, str):
        return value.strip() or None
    return value


def _latest_intake_event(db: Session, patient: Patient) -> WebhookEvent | None:
    return db.scalar(
        select(WebhookEvent)
        .where(
            WebhookEvent.source == WebhookSource.heyflow,
            WebhookEvent.patient_id == patient.id,
            WebhookEvent.processed.is_(True),
        )
        .order_by(WebhookEvent.received_at.desc(), WebhookEvent.id.desc())
        .limit(1)
    )


@router.get("", response_model=PatientListOut)
def list_patients(
    db: Session = Depends(get_db),
    _user: User = Depends(get_current_user),
    search: str | None = Query(default=None),
    status_filter: PatientStatus | None = Query(default=None, alias="status"),
    hashtag: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    filters = [Patient.deleted_at.is_(None)]
    if search:
        like = f"%{search.strip()}%"
        filters.append(
            or_(
                Patient.first_name.ilike(like),
                Patient.last_name.ilike(like),
                Patient.email.ilike(like),
                Patient.phone.ilike(like),
                Patient.patient_id.ilike(like),
            )
        )
    if status_filter is not None:
        filters.append(Patient.status == status_filter.value)

    ordered = select(Patient).where(*filters).order_by(Patient.created_at.desc(), Patient.id.desc())
    if hashtag:
        # JSON list membership is not portable across backends; filter in Python.
        tag = normalize_hashtag(hashtag)
        matches = [p for p in db.scalars(ordered) if tag in (p.membership_hashtags or [])]
        total = len(matches)
        patients = matches[offset : offset + limit]
    else:
        total = db.scalar(select(func.count()).select_from(Patient).where(*filters)) or 0
        patients = list(db.scalars(ordered.limit(limit).offset(offset)))
    return {
        "patients": patients,
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.post("", response_model=PatientOut, status_code=status.HTTP_201_CREATED)
def create_patient(
    payload: PatientCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.admin.value, Role.provider.value)),
    request_id: str | None = Header(default=None),
):
    if find_patient_by_email(db, payload.email) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Patient with this email already exists"
        )
    data = payload.model_dump()
    hashtags = data.pop("membership_hashtags") or []
    patient = Patient(
        **{key: _clean_value(key, value) for key, value in data.items()},
        membership_hashtags=merge_hashtags([], [normalize_hashtag(tag) for tag in hashtags]),
        rep_form_submission=False,
        status=PatientStatus.pending.value,
        created_by_user_id=user.id,
        updated_by_user_id=user.id,
    )
    patient.bmi = calculate_bmi(patient.weight_lbs, patient.height_inches)
    insert_patient(db, patient)
    log_event(
        db,
        actor=user,
        action="patient.created",
        entity_type="patient",
        entity_id=str(patient.id),
        after_obj=patient,
        request_id=request_id,
        ip_address=client_ip(request),
    )
    db.commit()
    db.refresh(patient)
    return patient


@router.get("/{patient_ref}", response_model=PatientOut)
def get_patient(
    patient_ref: str,
    db: Session = Depends(get_db),
    _user: User = Depends(get_current_user),
):
    return load_patient(db, patient_ref)


@router.patch("/{patient_ref}", response_model=PatientOut)
def update_patient(
    patient_ref: str,
    payload: PatientUpdate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.admin.value, Role.provider.value)),
    request_id: str | None = Header(default=None),
):
    patient = load_patient(db, patient_ref)
    before_data = snapshot_model(patient)
    data = payload.model_dump(exclude_unset=True)

    if data.get("email"):
        other = find_patient_by_email(db, data["email"])
        if other is not None and other.id != patient.id:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Patient with this email already exists",
            )
    for key, value in data.items():
        cleaned = _clean_value(key, value)
        if key in REQUIRED_FIELDS and not cleaned:
            continue
        setattr(patient, key, cleaned)
    if {"height_inches", "weight_lbs"} & data.keys():
        patient.bmi = calculate_bmi(patient.weight_lbs, patient.height_inches)

    patient.updated_by_user_id = user.id
    log_event(
        db,
        actor=user,
        action="patient.updated",
        entity_type="patient",
        entity_id=str(patient.id),
        before_data=before_data,
        after_obj=patient,
        request_id=request_id,
        ip_address=client_ip(request),
    )
    db.commit()
    db.refresh(patient)
    return patient


@router.patch("/{patient_ref}/status", response_model=PatientOut)
def update_patient_status(
    patient_ref: str,
    payload: PatientStatusUpdate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(
        require_roles(Role.admin.value, Role.provider.value, Role.doctor.value)
    ),
    request_id: str | None = Header(default=None),
):
    patient = load_patient(db, patient_ref)
    try:
        transition_status(
            db,
            patient,
            payload.status,
            actor=user,
            reason=payload.reason,
            request_id=request_id,
            ip_address=client_ip(request),
        )
    except (InvalidStatusTransition, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    db.commit()
    db.refresh(patient)
    return patient


@router.post("/{patient_ref}/hashtags", response_model=PatientOut)
def add_hashtag(
    patient_ref: str,
    payload: HashtagCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    request_id: str | None = Header(default=None),
):
    patient = load_patient(db, patient_ref)
    tag = normalize_hashtag(payload.tag)
    if not tag:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid hashtag")
    before = list(patient.membership_hashtags or [])
    if tag in before:
        return patient
    patient.membership_hashtags = merge_hashtags(before, [tag])
    patient.updated_by_user_id = user.id
    log_event(
        db,
        actor=user,
        action="patient.hashtag_added",
        entity_type="patient",
        entity_id=str(patient.id),
        before_data={"membership_hashtags": before},
        after_data={"membership_hashtags": patient.membership_hashtags},
        request_id=request_id,
        ip_address=client_ip(request),
    )
    db.commit()
    db.refresh(patient)
    return patient


@router.delete("/{patient_ref}/hashtags/{tag}", response_model=PatientOut)
def remove_hashtag(
    patient_ref: str,
    tag: str,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    request_id: str | None = Header(default=None),
):
    patient = load_patient(db, patient_ref)
    cleaned = normalize_hashtag(tag)
    before = list(patient.membership_hashtags or [])
    if cleaned not in before:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Hashtag not found")
    patient.membership_hashtags = [item for item in before if item != cleaned]
    patient.updated_by_user_id = user.id
    log_event(
        db,
        actor=user,
        action="patient.hashtag_removed",
        entity_type="patient",
        entity_id=str(patient.id),
        before_data={"membership_hashtags": before},
        after_data={"membership_hashtags": patient.membership_hashtags},
        request_id=request_id,
        ip_address=client_ip(request),
    )
    db.commit()
    db.refresh(patient)
    return patient


@router.get("/{patient_ref}/intake", response_model=PatientIntakeOut)
def get_patient_intake(
    patient_ref: str,
    db: Session = Depends(get_db),
    _user: User = Depends(get_current_user),
):
    patient = load_patient(db, patient_ref)
    event = _latest_intake_event(db, patient)
    intake = patient.weight_loss_intake
    return PatientIntakeOut(
        patient_id=patient.patient_id,
        form_type=patient.form_type,
        submitted_at=event.received_at if event else None,
        weight_loss=WeightLossIntakeOut.model_validate(intake) if intake else None,
        fields=[
            IntakeFieldOut(**item) for item in (intake_display_fields(event.payload) if event else [])
        ],
    )


@router.get("/{patient_ref}/intake/pdf")
def get_patient_intake_pdf(
    patient_ref: str,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    request_id: str | None = Header(default=None),
):
    patient = load_patient(db, patient_ref)
    event = _latest_intake_event(db, patient)
    fields = intake_display_fields(event.payload) if event else []
    pdf_bytes = build_intake_pdf(patient, fields)
    log_event(
        db,
        actor=user,
        action="patient.intake_pdf",
        entity_type="patient",
        entity_id=str(patient.id),
        request_id=request_id,
        ip_address=client_ip(request),
    )
    db.commit()
    filename = f"intake-{patient.patient_id}.pdf"
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return Response(content=pdf_bytes, media_type="application/pdf", headers=headers)


@router.delete("/{patient_ref}", response_model=PatientOut)
def delete_patient(
    patient_ref: str,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.admin.value)),
    request_id: str | None = Header(default=None),
):
    patient = load_patient(db, patient_ref)
    before_data = snapshot_model(patient)
    # Legacy or unknown stored values are canonicalized so archiving always applies.
    normalize_stored_status(db, patient, origin="api")
    try:
        transition_status(
            db,
            patient,
            PatientStatus.archived,
            actor=user,
            reason="deleted",
            request_id=request_id,
            ip_address=client_ip(request),
        )
    except InvalidStatusTransition as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    patient.deleted_at = datetime.now(timezone.utc)
    patient.deleted_by_user_id = user.id
    patient.updated_by_user_id = user.id
    log_event(
        db,
        actor=user,
        action="patient.deleted",
        entity_type="patient",
        entity_id=str(patient.id),
        before_data=before_data,
        after_obj=patient,
        request_id=request_id,
        ip_address=client_ip(request),
    )
    db.commit()
    db.refresh(patient)
    return patient

