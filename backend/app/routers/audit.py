from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.deps import require_roles
from app.models.audit_log import AuditLog
from app.models.user import Role, User
from app.schemas.audit_log import AuditLogOut

router = APIRouter(prefix="/audit", tags=["audit"])

AUDIT_ROLES = (Role.admin.value,)
CLINICAL_AUDIT_ROLES = (Role.admin.value, Role.provider.value, Role.doctor.value)


def _entity_trail(db: Session, entity_type: str, entity_id: int, limit: int, offset: int):
    stmt = (
        select(AuditLog)
        .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == str(entity_id))
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(db.scalars(stmt))


@router.get("", response_model=list[AuditLogOut])
def list_audit(
    db: Session = Depends(get_db),
    _user: User = Depends(require_roles(*AUDIT_ROLES)),
    entity_type: str | None = Query(default=None),
    entity_id: str | None = Query(default=None),
    action: str | None = Query(default=None),
    origin: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    stmt = select(AuditLog).order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
    if entity_type:
        stmt = stmt.where(AuditLog.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(AuditLog.entity_id == entity_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if origin:
        stmt = stmt.where(AuditLog.origin == origin)
    stmt = stmt.limit(limit).offset(offset)
    return list(db.scalars(stmt))


@router.get("/patients/{patient_id}", response_model=list[AuditLogOut])
def patient_audit(
    patient_id: int,
    db: Session = Depends(get_db),
    _user: User = Depends(require_roles(*CLINICAL_AUDIT_ROLES)),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    return _entity_trail(db, "patient", patient_id, limit, offset)


@router.get("/soap-notes/{note_id}", response_model=list[AuditLogOut])
def soap_note_audit(
    note_id: int,
    db: Session = Depends(get_db),
    _user: User = Depends(require_roles(*CLINICAL_AUDIT_ROLES)),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    return _entity_trail(db, "soap_note", note_id, limit, offset)
