from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from calcrm.api.deps.request_identity import get_current_principal
from calcrm.core.change_feed import publish_change
from calcrm.db.session import get_db
from calcrm.schemas.record_lock import (
    LockAcquireRequest,
    LockAcquireResponse,
    LockCheckResponse,
    LockListResponse,
    LockReleaseAllResponse,
    LockReleaseRequest,
    LockReleaseResponse,
)
from calcrm.services.identity_service import Principal
from calcrm.services.record_lock_service import (
    RecordLockFailure,
    RecordLockService,
    to_lock_view,
)

router = APIRouter()


def _raise_lock_failure(exc: RecordLockFailure) -> None:
    raise HTTPException(status_code=exc.status_code, detail=exc.to_detail())


@router.post(
    "/acquire",
    response_model=LockAcquireResponse,
    response_model_exclude_none=True,
    status_code=status.HTTP_200_OK,
)
def acquire_record_lock(
    payload: LockAcquireRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    service = RecordLockService(db)
    try:
        result = service.acquire(
            entity_type=payload.entity_type,
            entity_id=payload.entity_id,
            principal=principal,
            duration_minutes=payload.duration_minutes,
        )
        response = result.to_response()
        db.commit()
    except RecordLockFailure as exc:
        db.rollback()
        _raise_lock_failure(exc)

    # Denial is a normal result (HTTP 200, success=false), never an error.
    if response.success:
        publish_change(
            kind="lock",
            action="upsert",
            entity_type=payload.entity_type,
            entity_id=payload.entity_id,
            payload=to_lock_view(result.lock).model_dump(mode="json"),
        )
    return response


@router.post("/release", response_model=LockReleaseResponse)
def release_record_lock(
    payload: LockReleaseRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    service = RecordLockService(db)
    try:
        released = service.release(
            entity_type=payload.entity_type,
            entity_id=payload.entity_id,
            principal=principal,
        )
        db.commit()
    except RecordLockFailure as exc:
        db.rollback()
        _raise_lock_failure(exc)

    if released:
        publish_change(
            kind="lock",
            action="delete",
            entity_type=payload.entity_type,
            entity_id=payload.entity_id,
        )
    return LockReleaseResponse(released=released)


@router.get("/mine", response_model=LockListResponse)
def list_my_record_locks(
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    locks = RecordLockService(db).list_held(principal=principal)
    return LockListResponse(locks=[to_lock_view(lock) for lock in locks])


@router.post("/release-mine", response_model=LockReleaseAllResponse)
def release_my_record_locks(
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    service = RecordLockService(db)
    held = [(lock.entity_type, lock.entity_id) for lock in service.list_held(principal=principal)]
    count = service.release_all(principal=principal)
    db.commit()
    for entity_type, entity_id in held:
        publish_change(kind="lock", action="delete", entity_type=entity_type, entity_id=entity_id)
    return LockReleaseAllResponse(released_count=count)


@router.get(
    "/{entity_type}/{entity_id}",
    response_model=LockCheckResponse,
    response_model_exclude_none=True,
)
def check_record_lock(
    entity_type: str,
    entity_id: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    try:
        lock_status = RecordLockService(db).check(
            entity_type=entity_type,
            entity_id=entity_id,
            principal=principal,
        )
    except RecordLockFailure as exc:
        _raise_lock_failure(exc)
    return lock_status.to_response()
