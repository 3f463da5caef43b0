# models.py

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from Dmv.db import Base


class UserConfigRow(Base):
    __tablename__ = "user_configs"
    # Discord user snowflake
    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    # IANA zone identifier, e.g. Europe/Madrid
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
