import uuid

from sqlalchemy import Boolean, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from calcrm.db.base import Base
from calcrm.models.mixins import AuditMixin, VersionedMixin


class Branch(VersionedMixin, AuditMixin, Base):
    """Physical site of a company where equipment lives."""

    __tablename__ = "branch"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    company_id: Mapped[str] = mapped_column(
        ForeignKey("company.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    city: Mapped[str | None] = mapped_column(String(120), nullable=True)
    # Used for technician assignment.
    region: Mapped[str | None] = mapped_column(String(120), nullable=True)
    site_requirements: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
