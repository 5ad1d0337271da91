from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from calcrm.db.base import Base


class RecordLock(Base):
    """
    Exclusive editing claim on one entity.

    A row whose expires_at has passed is treated as absent by every read and
    write path; the sweeper only reclaims space. entity_type/entity_id is a
    weak reference, so deleting the entity leaves the lock to expire.
    """

    __tablename__ = "record_lock"

    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", name="uq_record_lock_entity"),
        Index("ix_record_lock_expires_at", "expires_at"),
        Index("ix_record_lock_holder_id", "holder_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    holder_id: Mapped[str] = mapped_column(String(36), nullable=False)
    # Snapshot at acquire time, not kept in sync with the profile.
    holder_name: Mapped[str] = mapped_column(String(255), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now
