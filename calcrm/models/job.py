import uuid
from datetime import date

from sqlalchemy import Date, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from calcrm.db.base import Base
from calcrm.models.mixins import AuditMixin, VersionedMixin


class Job(VersionedMixin, AuditMixin, Base):
    """Site visit performing calibration work at one branch."""

    __tablename__ = "job"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    branch_id: Mapped[str] = mapped_column(
        ForeignKey("branch.id", ondelete="CASCADE"), nullable=False, index=True
    )
    job_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    # new | quoted | scheduled | in_progress | completed | invoiced | cancelled
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="new")
    priority: Mapped[str] = mapped_column(String(10), nullable=False, default="normal")
    assigned_to: Mapped[str | None] = mapped_column(String(36), nullable=True)
    scheduled_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    internal_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    client_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
