from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from calcrm.schemas.record_lock import normalize_entity_id, normalize_entity_type

PresenceStatus = Literal["online", "idle", "editing"]


class PresenceUpdateRequest(BaseModel):
    current_page: str = Field(min_length=1, max_length=500)
    entity_type: str | None = None
    entity_id: str | None = None
    status: PresenceStatus = "online"

    @model_validator(mode="after")
    def validate_entity_ref(self) -> "PresenceUpdateRequest":
        # A record page carries both halves of the reference, a list page neither.
        if (self.entity_type is None) != (self.entity_id is None):
            raise ValueError("entity_type and entity_id must be provided together.")
        if self.entity_type is not None:
            self.entity_type = normalize_entity_type(self.entity_type)
            self.entity_id = normalize_entity_id(self.entity_id)
        return self


class PresenceUpdateResponse(BaseModel):
    ok: bool


class ViewerView(BaseModel):
    user_id: str
    user_name: str
    status: str
    last_seen: datetime
