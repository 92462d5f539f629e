"""Profile model: role and authoritative presence state per subject."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from shared.models.base import Base


class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    subject_id: Mapped[uuid.UUID] = mapped_column(unique=True)
    nickname: Mapped[str | None] = mapped_column(String, default=None)

    # "provider" | "client"
    role: Mapped[str] = mapped_column(String, default="client")

    # "available" | "busy" | "offline"; only meaningful for providers
    state: Mapped[str] = mapped_column(String, default="available")

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
