import uuid
from datetime import date

from sqlalchemy import Boolean, Date, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from calcrm.db.base import Base
from calcrm.models.mixins import AuditMixin, VersionedMixin


class Certificate(VersionedMixin, AuditMixin, Base):
    """Calibration result for one piece of equipment on one job."""

    __tablename__ = "certificate"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    job_id: Mapped[str] = mapped_column(ForeignKey("job.id", ondelete="CASCADE"), nullable=False, index=True)
    equipment_id: Mapped[str] = mapped_column(ForeignKey("equipment.id"), nullable=False, index=True)
    certificate_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    # draft | pending_review | approved | issued
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    calibration_date: Mapped[date] = mapped_column(Date, nullable=False)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    passed: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
