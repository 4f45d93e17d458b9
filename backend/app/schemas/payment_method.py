from typing import Optional

from pydantic import BaseModel, Field


class CardOut(BaseModel):
    id: str
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    created: Optional[int] = None
    is_default: bool = False


class CardListOut(BaseModel):
    patient_id: int
    stripe_customer_id: Optional[str] = None
    payment_methods: list[CardOut]


class SetupIntentOut(BaseModel):
    setup_intent_id: str
    client_secret: str
    stripe_customer_id: str


class CardAttach(BaseModel):
    payment_method_id: str = Field(min_length=3, max_length=255)
    set_as_default: bool = False
