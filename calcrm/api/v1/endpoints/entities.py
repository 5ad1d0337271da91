from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, status
from fastapi.encoders import jsonable_encoder
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from calcrm.api.deps.request_identity import get_current_principal
from calcrm.crud.entities import DuplicateError, create_entity, get_entity, to_entity_out
from calcrm.db.session import get_db
from calcrm.schemas.entities import EntityOut, VersionedUpdateRequest
from calcrm.services.entity_registry import EntityConfig
from calcrm.services.identity_service import Principal
from calcrm.services.record_lock_service import RecordLockFailure
from calcrm.services.version_guard import EntityNotFound, VersionConflict, versioned_update


def create_entity_router(cfg: EntityConfig) -> APIRouter:
    router = APIRouter(tags=[f"Entities | {cfg.label}"])

    @router.post("", response_model=EntityOut, status_code=status.HTTP_201_CREATED)
    def create_item(
        obj_in: dict[str, Any] = Body(...),
        db: Session = Depends(get_db),
        principal: Principal = Depends(get_current_principal),
    ):
        try:
            obj = create_entity(db, cfg.entity_type, obj_in, principal=principal)
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=jsonable_encoder(exc.errors()))
        except DuplicateError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return to_entity_out(cfg.entity_type, obj)

    @router.get("/{item_id}", response_model=EntityOut)
    def read_item(
        item_id: str,
        db: Session = Depends(get_db),
        principal: Principal = Depends(get_current_principal),
    ):
        obj = get_entity(db, cfg.entity_type, item_id)
        if obj is None:
            raise HTTPException(status_code=404, detail=f"{cfg.label} not found")
        return to_entity_out(cfg.entity_type, obj)

    @router.patch("/{item_id}", response_model=EntityOut)
    def update_item(
        item_id: str,
        payload: VersionedUpdateRequest,
        db: Session = Depends(get_db),
        principal: Principal = Depends(get_current_principal),
    ):
        try:
            obj = versioned_update(
                db,
                entity_type=cfg.entity_type,
                entity_id=item_id,
                changes=payload.changes,
                expected_version=payload.expected_version,
                principal=principal,
            )
            db.commit()
        except ValidationError as exc:
            db.rollback()
            raise HTTPException(status_code=422, detail=jsonable_encoder(exc.errors()))
        except EntityNotFound:
            db.rollback()
            raise HTTPException(status_code=404, detail=f"{cfg.label} not found")
        except VersionConflict as exc:
            db.rollback()
            raise HTTPException(status_code=409, detail=exc.to_detail())
        except RecordLockFailure as exc:
            db.rollback()
            raise HTTPException(status_code=exc.status_code, detail=exc.to_detail())
        except IntegrityError:
            db.rollback()
            raise HTTPException(status_code=400, detail=f"{cfg.label} update violates a constraint")

        db.refresh(obj)
        return to_entity_out(cfg.entity_type, obj)

    return router
