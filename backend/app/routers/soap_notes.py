from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.deps import client_ip, get_current_user, require_roles
from app.models.soap_note import SoapNote, SoapNoteStatus
from app.models.user import Role, User
from app.routers.patients import load_patient
from app.schemas.soap_note import SoapNoteCreate, SoapNoteOut, SoapNoteStatusUpdate
from app.services.audit import log_event, snapshot_model

router = APIRouter(prefix="/soap-notes", tags=["soap-notes"])
patient_notes_router = APIRouter(prefix="/patients", tags=["soap-notes"])

DEFAULT_AUTHOR = "BECCA AI"


def load_note(db: Session, note_id: int) -> SoapNote:
    note = db.get(SoapNote, note_id)
    if not note:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="SOAP note not found")
    return note


@patient_notes_router.get("/{patient_ref}/soap-notes", response_model=list[SoapNoteOut])
def list_patient_notes(
    patient_ref: str,
    db: Session = Depends(get_db),
    _user: User = Depends(get_current_user),
    status_filter: SoapNoteStatus | None = Query(default=None, alias="status"),
):
    patient = load_patient(db, patient_ref)
    stmt = select(SoapNote).where(SoapNote.patient_id == patient.id)
    if status_filter is not None:
        stmt = stmt.where(SoapNote.status == status_filter)
    stmt = stmt.order_by(SoapNote.created_at.desc(), SoapNote.id.desc())
    return list(db.scalars(stmt))


@patient_notes_router.post(
    "/{patient_ref}/soap-notes",
    response_model=SoapNoteOut,
    status_code=status.HTTP_201_CREATED,
)
def create_note(
    patient_ref: str,
    payload: SoapNoteCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(
        require_roles(Role.admin.value, Role.provider.value, Role.doctor.value)
    ),
    request_id: str | None = Header(default=None),
):
    patient = load_patient(db, patient_ref)
    note = SoapNote(
        patient_id=patient.id,
        content=payload.content,
        original_content=payload.content,
        status=SoapNoteStatus.pending,
        created_by=payload.created_by or DEFAULT_AUTHOR,
        version=1,
        edit_history=[],
        ai_model=payload.ai_model,
        prompt_tokens=payload.prompt_tokens,
        completion_tokens=payload.completion_tokens,
    )
    db.add(note)
    db.flush()
    log_event(
        db,
        actor=user,
        action="soap_note.created",
        entity_type="soap_note",
        entity_id=str(note.id),
        after_data={"patient_id": patient.id, "created_by": note.created_by},
        request_id=request_id,
        ip_address=client_ip(request),
    )
    db.commit()
    db.refresh(note)
    return note


@router.get("/{note_id}", response_model=SoapNoteOut)
def get_note(
    note_id: int,
    db: Session = Depends(get_db),
    _user: User = Depends(get_current_user),
):
    return load_note(db, note_id)


@router.put("/{note_id}/status", response_model=SoapNoteOut)
def update_note_status(
    note_id: int,
    payload: SoapNoteStatusUpdate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(Role.doctor.value, Role.provider.value)),
    request_id: str | None = Header(default=None),
):
    note = load_note(db, note_id)
    if note.status == SoapNoteStatus.approved:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Approved notes are locked"
        )

    now = datetime.now(timezone.utc)
    before_data = snapshot_model(note, exclude={"content", "original_content", "edit_history"})
    if payload.content is not None and payload.content != note.content:
        # Reassign so the JSON column is flagged dirty.
        note.edit_history = [
            *(note.edit_history or []),
            {
                "version": note.version,
                "content": note.content,
                "edited_by": user.display_name,
                "edited_at": now.isoformat(),
            },
        ]
        note.version += 1
        note.content = payload.content

    note.status = SoapNoteStatus(payload.status)
    note.approved_by = user.id
    note.approved_by_name = user.display_name
    note.approved_by_credentials = user.credentials
    note.approved_at = now
    log_event(
        db,
        actor=user,
        action=f"soap_note.{payload.status}",
        entity_type="soap_note",
        entity_id=str(note.id),
        before_data=before_data,
        after_data=snapshot_model(note, exclude={"content", "original_content", "edit_history"}),
        request_id=request_id,
        ip_address=client_ip(request),
    )
    db.commit()
    db.refresh(note)
    return note


@router.delete("/{note_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_note(
    note_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    request_id: str | None = Header(default=None),
):
    note = load_note(db, note_id)
    if note.status == SoapNoteStatus.approved:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Approved notes cannot be deleted"
        )
    log_event(
        db,
        actor=user,
        action="soap_note.deleted",
        entity_type="soap_note",
        entity_id=str(note.id),
        before_data=snapshot_model(note, exclude={"content", "original_content", "edit_history"}),
        request_id=request_id,
        ip_address=client_ip(request),
    )
    db.delete(note)
    db.commit()
