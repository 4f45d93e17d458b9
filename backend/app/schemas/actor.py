from typing import Optional

from pydantic import BaseModel, ConfigDict


class ActorOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: Optional[str] = None
    full_name: str
    roles: list[str]


class MeOut(ActorOut):
    auth0_sub: str
    credentials: Optional[str] = None
    language: str
    is_active: bool
