from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from calcrm.services.entity_registry import get_entity_config
from calcrm.services.identity_service import Principal
from calcrm.services.record_lock_service import RecordLockService

logger = logging.getLogger(__name__)


class EntityNotFound(LookupError):
    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class VersionConflict(Exception):
    """Stored version moved on since the caller read the entity."""

    code = "VERSION_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str, expected: int, actual: int):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Version conflict on {entity_type} {entity_id}: expected {expected}, found {actual}"
        )

    def to_detail(self) -> dict:
        return {
            "code": self.code,
            "message": "This record has been modified by another user. Please refresh and try again.",
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "expected_version": self.expected,
            "current_version": self.actual,
        }


def validate_changes(entity_type: str, changes: dict[str, Any]) -> dict[str, Any]:
    """Validate a patch against the entity's change schema; raises pydantic ValidationError."""
    cfg = get_entity_config(entity_type)
    return cfg.changes_schema.model_validate(changes).model_dump(exclude_unset=True)


def versioned_update(
    db: Session,
    *,
    entity_type: str,
    entity_id: str,
    changes: dict[str, Any],
    expected_version: int,
    principal: Principal,
    lock_service: RecordLockService | None = None,
) -> Any:
    """
    Apply `changes` only if the stored version still equals `expected_version`.

    The check and the bump happen in one conditional UPDATE, so two writers
    holding the same version can never both succeed. Does not commit.
    """
    cfg = get_entity_config(entity_type)
    patch = validate_changes(cfg.entity_type, changes)

    (lock_service or RecordLockService(db)).validate_for_write(
        entity_type=cfg.entity_type,
        entity_id=entity_id,
        principal=principal,
    )

    model = cfg.model
    values = dict(patch)
    values["version"] = model.version + 1
    values["last_changed_by"] = principal.email or principal.user_id
    result = db.execute(
        update(model)
        .where(model.id == entity_id)
        .where(model.version == int(expected_version))
        .values(**values)
        .execution_options(synchronize_session=False)
    )

    if (result.rowcount or 0) == 0:
        current = db.get(model, entity_id, populate_existing=True)
        if current is None:
            raise EntityNotFound(cfg.entity_type, entity_id)
        logger.info(
            "version_conflict entity=%s/%s expected=%s actual=%s user=%s",
            cfg.entity_type,
            entity_id,
            expected_version,
            current.version,
            principal.user_id,
        )
        raise VersionConflict(cfg.entity_type, entity_id, int(expected_version), int(current.version))

    return db.get(model, entity_id, populate_existing=True)
