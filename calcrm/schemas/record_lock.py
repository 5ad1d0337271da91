from __future__ import annotations

import re
from datetime import datetime

from pydantic import BaseModel, Field, field_validator

_ENTITY_TYPE_RE = re.compile(r"^[a-z][a-z0-9_]{0,31}$")


def normalize_entity_type(value: str | None) -> str:
    normalized = (value or "").strip().lower()
    if not _ENTITY_TYPE_RE.match(normalized):
        raise ValueError("entity_type must be a lowercase tag of 1-32 characters.")
    return normalized


def normalize_entity_id(value: str | None) -> str:
    normalized = (value or "").strip()
    if not normalized or len(normalized) > 64:
        raise ValueError("entity_id must be 1-64 characters.")
    return normalized


class EntityRef(BaseModel):
    entity_type: str
    entity_id: str

    @field_validator("entity_type")
    @classmethod
    def validate_entity_type(cls, value: str) -> str:
        return normalize_entity_type(value)

    @field_validator("entity_id")
    @classmethod
    def validate_entity_id(cls, value: str) -> str:
        return normalize_entity_id(value)


class LockAcquireRequest(EntityRef):
    duration_minutes: int | None = Field(default=None, ge=1)


class LockReleaseRequest(EntityRef):
    pass


class LockAcquireResponse(BaseModel):
    success: bool
    created: bool | None = None
    extended: bool | None = None
    took_over: bool | None = None
    lock_id: int | None = None
    error: str | None = None
    locked_by: str | None = None
    locked_by_name: str | None = None
    locked_at: datetime | None = None
    expires_at: datetime | None = None


class LockReleaseResponse(BaseModel):
    released: bool


class LockCheckResponse(BaseModel):
    locked: bool
    is_mine: bool | None = None
    locked_by: str | None = None
    locked_by_name: str | None = None
    locked_at: datetime | None = None
    expires_at: datetime | None = None


class LockView(BaseModel):
    lock_id: int
    entity_type: str
    entity_id: str
    locked_by: str
    locked_by_name: str
    locked_at: datetime
    expires_at: datetime


class LockListResponse(BaseModel):
    locks: list[LockView]


class LockReleaseAllResponse(BaseModel):
    released_count: int
