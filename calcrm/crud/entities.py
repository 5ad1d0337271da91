from __future__ import annotations

from typing import Any

from sqlalchemy import inspect
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from calcrm.schemas.entities import EntityOut
from calcrm.services.entity_registry import get_entity_config
from calcrm.services.identity_service import Principal

_ENVELOPE_KEYS = {"id", "version", "updated_at"}


class DuplicateError(Exception):
    """Raised when a unique constraint is violated."""


def create_entity(
    db: Session,
    entity_type: str,
    payload: dict[str, Any],
    *,
    principal: Principal | None = None,
) -> Any:
    cfg = get_entity_config(entity_type)
    data = cfg.create_schema.model_validate(payload).model_dump(exclude_unset=True)
    actor = (principal.email or principal.user_id) if principal else "system@local"
    obj = cfg.model(**data, created_by=actor, last_changed_by=actor)
    db.add(obj)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise DuplicateError(f"{cfg.label} already exists or references a missing parent.") from exc
    db.refresh(obj)
    return obj


def get_entity(db: Session, entity_type: str, entity_id: str) -> Any | None:
    cfg = get_entity_config(entity_type)
    return db.get(cfg.model, entity_id)


def to_entity_out(entity_type: str, obj: Any) -> EntityOut:
    columns = [attr.key for attr in inspect(obj).mapper.column_attrs]
    data = {key: getattr(obj, key) for key in columns if key not in _ENVELOPE_KEYS}
    return EntityOut(
        entity_type=get_entity_config(entity_type).entity_type,
        id=str(obj.id),
        version=int(obj.version),
        updated_at=getattr(obj, "updated_at", None),
        data=data,
    )
