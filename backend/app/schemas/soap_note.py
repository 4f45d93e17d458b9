from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.soap_note import SoapNoteStatus


class SoapNoteCreate(BaseModel):
    content: str = Field(min_length=1)
    created_by: Optional[str] = None
    ai_model: Optional[str] = None
    prompt_tokens: Optional[int] = Field(default=None, ge=0)
    completion_tokens: Optional[int] = Field(default=None, ge=0)


class SoapNoteStatusUpdate(BaseModel):
    status: Literal["approved", "rejected"]
    content: Optional[str] = None


class SoapNoteOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_id: int
    content: str
    original_content: Optional[str] = None
    status: SoapNoteStatus
    created_by: str
    approved_by: Optional[int] = None
    approved_by_name: Optional[str] = None
    approved_by_credentials: Optional[str] = None
    approved_at: Optional[datetime] = None
    version: int
    edit_history: list[dict]
    ai_model: Optional[str] = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    created_at: datetime
    updated_at: datetime
