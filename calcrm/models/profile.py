from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from calcrm.db.base import Base


class Profile(Base):
    """Staff or client principal, keyed by the auth provider subject."""

    __tablename__ = "profile"

    __table_args__ = (UniqueConstraint("email", name="uq_profile_email"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # admin | staff | client
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="staff")
    company_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<Profile(id='{self.id}', email='{self.email}', role='{self.role}')>"
