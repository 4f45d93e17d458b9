from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, computed_field

from app.schemas.actor import ActorOut


class AuditLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    created_at: datetime
    origin: str
    action: str
    entity_type: str
    entity_id: str
    actor: Optional[ActorOut] = None
    actor_email: Optional[str] = None
    request_id: Optional[str] = None
    ip_address: Optional[str] = None
    before_json: Optional[dict[str, Any]] = None
    after_json: Optional[dict[str, Any]] = None

    @computed_field
    @property
    def changed_fields(self) -> list[str]:
        """Keys whose value differs between the before and after snapshots."""
        before = self.before_json or {}
        after = self.after_json or {}
        if not before:
            return []
        return sorted(key for key in before.keys() | after.keys() if before.get(key) != after.get(key))
