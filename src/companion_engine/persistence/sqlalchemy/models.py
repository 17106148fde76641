from __future__ import annotations

from sqlalchemy import Boolean, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


class SessionRow(TimestampMixin, Base):
    __tablename__ = "ce_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    persona_name: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    user_name: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    affection: Mapped[int] = mapped_column(Integer, nullable=False, default=40)
    is_ended: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    state_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")


Index("ix_ce_sessions_updated", SessionRow.updated_at)
