from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .base import BaseSchema


class _ChangesBase(BaseModel):
    # Unknown keys (including "version") are rejected, never silently dropped.
    model_config = ConfigDict(extra="forbid")


class CompanyChanges(_ChangesBase):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    trading_name: Optional[str] = Field(default=None, max_length=255)
    primary_contact_email: Optional[str] = Field(default=None, max_length=255)
    billing_city: Optional[str] = Field(default=None, max_length=120)
    payment_terms_days: Optional[int] = Field(default=None, ge=0)
    notes: Optional[str] = None
    is_active: Optional[bool] = None


class CompanyCreate(CompanyChanges):
    company_code: str = Field(min_length=1, max_length=20)
    name: str = Field(min_length=1, max_length=255)


class BranchChanges(_ChangesBase):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    city: Optional[str] = Field(default=None, max_length=120)
    region: Optional[str] = Field(default=None, max_length=120)
    site_requirements: Optional[str] = None
    is_active: Optional[bool] = None


class BranchCreate(BranchChanges):
    company_id: str = Field(min_length=1, max_length=36)
    name: str = Field(min_length=1, max_length=255)


class EquipmentChanges(_ChangesBase):
    description: Optional[str] = Field(default=None, min_length=1, max_length=255)
    manufacturer: Optional[str] = Field(default=None, max_length=120)
    model: Optional[str] = Field(default=None, max_length=120)
    serial_number: Optional[str] = Field(default=None, max_length=120)
    category: Optional[str] = Field(default=None, min_length=1, max_length=60)
    calibration_interval_months: Optional[int] = Field(default=None, ge=1)
    next_calibration_due: Optional[date] = None
    is_active: Optional[bool] = None


class EquipmentCreate(EquipmentChanges):
    branch_id: str = Field(min_length=1, max_length=36)
    description: str = Field(min_length=1, max_length=255)
    category: str = Field(min_length=1, max_length=60)


class JobChanges(_ChangesBase):
    status: Optional[str] = Field(default=None, max_length=20)
    priority: Optional[str] = Field(default=None, max_length=10)
    assigned_to: Optional[str] = Field(default=None, max_length=36)
    scheduled_date: Optional[date] = None
    internal_notes: Optional[str] = None
    client_notes: Optional[str] = None


class JobCreate(JobChanges):
    branch_id: str = Field(min_length=1, max_length=36)
    job_number: str = Field(min_length=1, max_length=30)


class QuoteChanges(_ChangesBase):
    status: Optional[str] = Field(default=None, max_length=20)
    valid_until: Optional[date] = None
    total: Optional[Decimal] = Field(default=None, ge=0)
    notes: Optional[str] = None


class QuoteCreate(QuoteChanges):
    branch_id: str = Field(min_length=1, max_length=36)
    quote_number: str = Field(min_length=1, max_length=30)


class CertificateChanges(_ChangesBase):
    status: Optional[str] = Field(default=None, max_length=20)
    calibration_date: Optional[date] = None
    expiry_date: Optional[date] = None
    passed: Optional[bool] = None


class CertificateCreate(CertificateChanges):
    job_id: str = Field(min_length=1, max_length=36)
    equipment_id: str = Field(min_length=1, max_length=36)
    certificate_number: str = Field(min_length=1, max_length=30)
    calibration_date: date


class VersionedUpdateRequest(BaseModel):
    expected_version: int = Field(ge=1)
    changes: dict[str, Any] = Field(default_factory=dict)


class EntityOut(BaseSchema):
    """Generic envelope: id, version and the remaining columns under `data`."""

    entity_type: str
    id: str
    version: int
    updated_at: datetime | None = None
    data: dict[str, Any]
