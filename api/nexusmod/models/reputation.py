"""UserReputation ORM model.

One row per user. ``score``, ``tier``, ``perks`` and ``metrics`` are rewritten
wholesale on every recompute. ``history`` only grows on manual override and is
trimmed to the most recent entries by the scorer.

JSON columns are always reassigned, never mutated in place, so the ORM sees
the change.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class UserReputation(Base):
    __tablename__ = "user_reputation"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    score: Mapped[float] = mapped_column(Float, default=50.0, nullable=False)
    tier: Mapped[str] = mapped_column(String(20), default="novice", nullable=False)
    last_calculated: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    metrics: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    perks: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    # Structural only: always the unrestricted default
    restrictions: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    history: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    visibility_public: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    manual_override_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    manual_override_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    manual_override_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    manual_override_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
