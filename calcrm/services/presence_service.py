from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from calcrm.core.clock import Clock, utcnow
from calcrm.core.config import settings
from calcrm.core.flow_logging import flow_info
from calcrm.models.user_presence import PRESENCE_STATUSES, UserPresence
from calcrm.schemas.presence import ViewerView
from calcrm.schemas.record_lock import normalize_entity_id, normalize_entity_type
from calcrm.services.identity_service import Principal, Unauthenticated

logger = logging.getLogger(__name__)


@dataclass
class PresenceUpdate:
    current_page: str
    entity_type: str | None = None
    entity_id: str | None = None
    status: str = "online"


def to_viewer_view(row: UserPresence) -> ViewerView:
    return ViewerView(
        user_id=str(row.user_id),
        user_name=str(row.user_name),
        status=str(row.status),
        last_seen=row.last_seen,
    )


class PresenceService:
    """
    Who is looking at what. Each principal writes only its own row
    (last writer wins); readers only see rows inside the freshness window.
    """

    def __init__(self, db: Session, clock: Clock | None = None):
        self.db = db
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _require_principal(principal: Principal | None) -> Principal:
        if principal is None or not principal.user_id:
            raise Unauthenticated()
        return principal

    @staticmethod
    def _normalized(update: PresenceUpdate) -> PresenceUpdate:
        status = (update.status or "online").strip().lower()
        if status not in PRESENCE_STATUSES:
            raise ValueError(f"status must be one of {', '.join(PRESENCE_STATUSES)}.")
        entity_type = update.entity_type
        entity_id = update.entity_id
        if (entity_type is None) != (entity_id is None):
            raise ValueError("entity_type and entity_id must be provided together.")
        if entity_type is not None:
            entity_type = normalize_entity_type(entity_type)
            entity_id = normalize_entity_id(entity_id)
        return PresenceUpdate(
            current_page=(update.current_page or "").strip()[:500],
            entity_type=entity_type,
            entity_id=entity_id,
            status=status,
        )

    def _own_row(self, user_id: str) -> UserPresence | None:
        return self.db.execute(
            select(UserPresence).where(UserPresence.user_id == user_id)
        ).scalar_one_or_none()

    def current_entity(self, *, principal: Principal | None) -> tuple[str, str] | None:
        """Entity the caller was last seen on, if any."""
        principal = self._require_principal(principal)
        row = self._own_row(principal.user_id)
        if row is None or row.entity_type is None or row.entity_id is None:
            return None
        return str(row.entity_type), str(row.entity_id)

    def update(self, *, principal: Principal | None, update: PresenceUpdate) -> UserPresence:
        principal = self._require_principal(principal)
        update = self._normalized(update)
        now = self._now()

        row = self._own_row(principal.user_id)
        if row is None:
            row = UserPresence(user_id=principal.user_id)
            self._apply(row, principal, update, now)
            try:
                with self.db.begin_nested():
                    self.db.add(row)
            except IntegrityError:
                # Same user raced from two tabs; overwrite the row that won.
                row = self._own_row(principal.user_id)
                if row is None:
                    raise
                self._apply(row, principal, update, now)
                self.db.flush()
        else:
            self._apply(row, principal, update, now)
            self.db.flush()

        flow_info(
            logger,
            "presence_update user=%s page=%s entity=%s/%s status=%s",
            principal.user_id,
            update.current_page,
            update.entity_type or "-",
            update.entity_id or "-",
            update.status,
            category="presence",
        )
        return row

    @staticmethod
    def _apply(row: UserPresence, principal: Principal, update: PresenceUpdate, now: datetime) -> None:
        row.user_name = principal.display_name
        row.current_page = update.current_page
        row.entity_type = update.entity_type
        row.entity_id = update.entity_id
        row.status = update.status
        row.last_seen = now

    def list_viewers(
        self,
        *,
        entity_type: str,
        entity_id: str,
        principal: Principal | None,
    ) -> list[UserPresence]:
        principal = self._require_principal(principal)
        entity_type = normalize_entity_type(entity_type)
        entity_id = normalize_entity_id(entity_id)
        fresh_after = self._now() - timedelta(seconds=settings.PRESENCE_FRESHNESS_SECONDS)
        rows = self.db.execute(
            select(UserPresence)
            .where(UserPresence.entity_type == entity_type)
            .where(UserPresence.entity_id == entity_id)
            .where(UserPresence.last_seen > fresh_after)
            .where(UserPresence.user_id != principal.user_id)
            .order_by(UserPresence.last_seen.desc())
        ).scalars()
        return list(rows)

    def clear(self, *, principal: Principal | None) -> bool:
        """Drop the caller's row (explicit sign-out)."""
        principal = self._require_principal(principal)
        result = self.db.execute(
            delete(UserPresence)
            .where(UserPresence.user_id == principal.user_id)
        )
        return (result.rowcount or 0) > 0

    def cleanup_stale(self) -> int:
        cutoff = self._now() - timedelta(seconds=settings.PRESENCE_RETENTION_SECONDS)
        result = self.db.execute(
            delete(UserPresence)
            .where(UserPresence.last_seen < cutoff)
        )
        return int(result.rowcount or 0)
