from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from app.models.patient import PatientStatus


class PatientBase(BaseModel):
    first_name: str
    last_name: str
    email: EmailStr
    phone: Optional[str] = None
    date_of_birth: Optional[date] = None
    gender: Optional[str] = None
    language: str = "en"
    address: Optional[str] = None
    address_house: Optional[str] = None
    address_street: Optional[str] = None
    apartment_number: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    height_inches: Optional[int] = Field(default=None, ge=0)
    weight_lbs: Optional[float] = Field(default=None, ge=0)
    target_weight_lbs: Optional[float] = Field(default=None, ge=0)


class PatientCreate(PatientBase):
    membership_hashtags: list[str] = []
    assigned_rep: Optional[str] = None


class PatientUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    date_of_birth: Optional[date] = None
    gender: Optional[str] = None
    language: Optional[str] = None
    address: Optional[str] = None
    address_house: Optional[str] = None
    address_street: Optional[str] = None
    apartment_number: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    height_inches: Optional[int] = Field(default=None, ge=0)
    weight_lbs: Optional[float] = Field(default=None, ge=0)
    target_weight_lbs: Optional[float] = Field(default=None, ge=0)
    assigned_rep: Optional[str] = None


class PatientStatusUpdate(BaseModel):
    status: PatientStatus
    reason: Optional[str] = None


class HashtagCreate(BaseModel):
    tag: str = Field(min_length=1, max_length=64)


class PatientOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_id: str
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    date_of_birth: Optional[date] = None
    gender: Optional[str] = None
    language: str
    address: Optional[str] = None
    address_house: Optional[str] = None
    address_street: Optional[str] = None
    apartment_number: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    height_inches: Optional[int] = None
    weight_lbs: Optional[float] = None
    target_weight_lbs: Optional[float] = None
    bmi: Optional[float] = None
    form_type: Optional[str] = None
    consent_treatment: bool
    consent_telehealth: bool
    consent_date: Optional[datetime] = None
    membership_hashtags: list[str]
    assigned_rep: Optional[str] = None
    rep_form_submission: bool
    stripe_customer_id: Optional[str] = None
    status: str
    reviewed_by_user_id: Optional[int] = None
    reviewed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None


class PatientListOut(BaseModel):
    patients: list[PatientOut]
    total: int
    limit: int
    offset: int


class WeightLossIntakeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    target_weight_lbs: Optional[float] = None
    weight_loss_timeline: Optional[str] = None
    previous_weight_loss_attempts: Optional[str] = None
    exercise_frequency: Optional[str] = None
    diet_restrictions: list[str]
    diabetes_type: Optional[str] = None
    thyroid_condition: bool
    heart_conditions: list[str]


class IntakeFieldOut(BaseModel):
    label: str
    value: Any = None


class PatientIntakeOut(BaseModel):
    patient_id: str
    form_type: Optional[str] = None
    submitted_at: Optional[datetime] = None
    weight_loss: Optional[WeightLossIntakeOut] = None
    fields: list[IntakeFieldOut]
