from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base


class Role(str, enum.Enum):
    superadmin = "superadmin"
    admin = "admin"
    provider = "provider"
    doctor = "doctor"
    representative = "representative"
    patient = "patient"


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    auth0_sub: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), index=True, nullable=True)
    full_name: Mapped[str] = mapped_column(String(200), default="", nullable=False)
    credentials: Mapped[str | None] = mapped_column(String(64), nullable=True)
    roles: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    language: Mapped[str] = mapped_column(String(8), default="en", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    def has_role(self, *roles: str) -> bool:
        held = set(self.roles or [])
        if Role.superadmin.value in held:
            return True
        return bool(held.intersection(roles))

    @property
    def display_name(self) -> str:
        return self.full_name or self.email or self.auth0_sub
