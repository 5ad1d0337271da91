from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from calcrm.api.deps.request_identity import get_current_principal
from calcrm.core.change_feed import publish_change
from calcrm.db.session import get_db
from calcrm.schemas.presence import PresenceUpdateRequest, PresenceUpdateResponse, ViewerView
from calcrm.services.identity_service import Principal
from calcrm.services.presence_service import PresenceService, PresenceUpdate, to_viewer_view

router = APIRouter()


@router.post("", response_model=PresenceUpdateResponse)
def update_presence(
    payload: PresenceUpdateRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    service = PresenceService(db)
    try:
        previous = service.current_entity(principal=principal)
        row = service.update(
            principal=principal,
            update=PresenceUpdate(
                current_page=payload.current_page,
                entity_type=payload.entity_type,
                entity_id=payload.entity_id,
                status=payload.status,
            ),
        )
        viewer = to_viewer_view(row)
        db.commit()
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc))

    publish_change(
        kind="presence",
        action="upsert",
        entity_type=payload.entity_type,
        entity_id=payload.entity_id,
        payload=viewer.model_dump(mode="json"),
    )
    if previous is not None and previous != (payload.entity_type, payload.entity_id):
        publish_change(
            kind="presence",
            action="delete",
            entity_type=previous[0],
            entity_id=previous[1],
        )
    return PresenceUpdateResponse(ok=True)


@router.get("/{entity_type}/{entity_id}/viewers", response_model=list[ViewerView])
def list_viewers(
    entity_type: str,
    entity_id: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    try:
        rows = PresenceService(db).list_viewers(
            entity_type=entity_type,
            entity_id=entity_id,
            principal=principal,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return [to_viewer_view(row) for row in rows]
