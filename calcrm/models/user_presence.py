from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from calcrm.db.base import Base

PRESENCE_STATUSES = ("online", "idle", "editing")


class UserPresence(Base):
    """Last reported location of one principal. One row per user, overwritten on update."""

    __tablename__ = "user_presence"

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_user_presence_user"),
        Index("ix_user_presence_entity", "entity_type", "entity_id"),
        Index("ix_user_presence_last_seen", "last_seen"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    user_name: Mapped[str] = mapped_column(String(255), nullable=False)
    current_page: Mapped[str | None] = mapped_column(String(500), nullable=True)
    # Both null on list/index pages.
    entity_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="online")
    last_seen: Mapped[datetime] = mapped_column(DateTime, nullable=False, server_default=func.now())
