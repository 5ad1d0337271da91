from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from calcrm.core.clock import Clock, utcnow
from calcrm.core.config import settings
from calcrm.core.flow_logging import flow_info
from calcrm.models.record_lock import RecordLock
from calcrm.schemas.record_lock import (
    LockAcquireResponse,
    LockCheckResponse,
    LockView,
    normalize_entity_id,
    normalize_entity_type,
)
from calcrm.services.identity_service import Principal, Unauthenticated

logger = logging.getLogger(__name__)

DENIED_MESSAGE = "Record is being edited"


class LockOutcome(str, Enum):
    CREATED = "created"
    EXTENDED = "extended"
    TOOK_OVER = "took_over"
    DENIED = "denied"


@dataclass
class RecordLockFailure(Exception):
    code: str
    message: str
    status_code: int = 400
    locked_by: str | None = None
    locked_by_name: str | None = None
    expires_at: datetime | None = None

    def to_detail(self) -> dict:
        detail = {"code": self.code, "message": self.message}
        if self.locked_by:
            detail["locked_by"] = self.locked_by
        if self.locked_by_name:
            detail["locked_by_name"] = self.locked_by_name
        if self.expires_at is not None:
            detail["expires_at"] = self.expires_at.isoformat()
        return detail


@dataclass
class LockAcquireResult:
    outcome: LockOutcome
    # Caller's lock on success, the other holder's lock on denial.
    lock: RecordLock

    @property
    def success(self) -> bool:
        return self.outcome is not LockOutcome.DENIED

    def to_response(self) -> LockAcquireResponse:
        if not self.success:
            return LockAcquireResponse(
                success=False,
                error=DENIED_MESSAGE,
                locked_by=self.lock.holder_id,
                locked_by_name=self.lock.holder_name,
                locked_at=self.lock.acquired_at,
                expires_at=self.lock.expires_at,
            )
        return LockAcquireResponse(
            success=True,
            created=True if self.outcome is LockOutcome.CREATED else None,
            extended=True if self.outcome is LockOutcome.EXTENDED else None,
            took_over=True if self.outcome is LockOutcome.TOOK_OVER else None,
            lock_id=int(self.lock.id),
            expires_at=self.lock.expires_at,
        )


@dataclass
class LockStatus:
    locked: bool
    is_mine: bool = False
    lock: RecordLock | None = None

    def to_response(self) -> LockCheckResponse:
        if not self.locked or self.lock is None:
            return LockCheckResponse(locked=False)
        return LockCheckResponse(
            locked=True,
            is_mine=self.is_mine,
            locked_by=self.lock.holder_id,
            locked_by_name=self.lock.holder_name,
            locked_at=self.lock.acquired_at,
            expires_at=self.lock.expires_at,
        )


def to_lock_view(lock: RecordLock) -> LockView:
    return LockView(
        lock_id=int(lock.id),
        entity_type=str(lock.entity_type),
        entity_id=str(lock.entity_id),
        locked_by=str(lock.holder_id),
        locked_by_name=str(lock.holder_name),
        locked_at=lock.acquired_at,
        expires_at=lock.expires_at,
    )


class RecordLockService:
    """
    Pessimistic edit locks keyed by (entity_type, entity_id).

    The service flushes but never commits; the caller owns the transaction.
    A lock whose expires_at is not in the future is treated as absent
    everywhere, so correctness never depends on the sweeper having run.
    """

    def __init__(self, db: Session, clock: Clock | None = None):
        self.db = db
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _normalized_ref(entity_type: str | None, entity_id: str | None) -> tuple[str, str]:
        try:
            return normalize_entity_type(entity_type), normalize_entity_id(entity_id)
        except ValueError as exc:
            raise RecordLockFailure(code="LOCK_INVALID_REQUEST", message=str(exc)) from exc

    @staticmethod
    def _require_principal(principal: Principal | None) -> Principal:
        if principal is None or not principal.user_id:
            raise Unauthenticated()
        return principal

    @staticmethod
    def _duration(duration_minutes: int | None) -> timedelta:
        minutes = (
            settings.RECORD_LOCK_DEFAULT_MINUTES
            if duration_minutes is None
            else int(duration_minutes)
        )
        if minutes < 1:
            raise RecordLockFailure(
                code="LOCK_INVALID_REQUEST",
                message="duration_minutes must be positive.",
            )
        if minutes > settings.RECORD_LOCK_MAX_MINUTES:
            raise RecordLockFailure(
                code="LOCK_INVALID_REQUEST",
                message=f"duration_minutes must not exceed {settings.RECORD_LOCK_MAX_MINUTES}.",
            )
        return timedelta(minutes=minutes)

    def _lock_row(
        self,
        *,
        entity_type: str,
        entity_id: str,
        for_update: bool,
    ) -> RecordLock | None:
        stmt = (
            select(RecordLock)
            .where(RecordLock.entity_type == entity_type)
            .where(RecordLock.entity_id == entity_id)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def acquire(
        self,
        *,
        entity_type: str,
        entity_id: str,
        principal: Principal | None,
        duration_minutes: int | None = None,
    ) -> LockAcquireResult:
        principal = self._require_principal(principal)
        entity_type, entity_id = self._normalized_ref(entity_type, entity_id)
        duration = self._duration(duration_minutes)
        now = self._now()
        expires_at = now + duration

        existing = self._lock_row(entity_type=entity_type, entity_id=entity_id, for_update=True)
        if existing is None:
            lock = RecordLock(
                entity_type=entity_type,
                entity_id=entity_id,
                holder_id=principal.user_id,
                holder_name=principal.display_name,
                acquired_at=now,
                expires_at=expires_at,
            )
            try:
                # Savepoint keeps the caller's earlier writes if the insert loses.
                with self.db.begin_nested():
                    self.db.add(lock)
            except IntegrityError:
                # Lost the insert race on the unique key; decide against the winner's row.
                existing = self._lock_row(entity_type=entity_type, entity_id=entity_id, for_update=True)
                if existing is None:
                    raise
            else:
                flow_info(
                    logger,
                    "record_lock_created entity=%s/%s holder=%s expires_at=%s",
                    entity_type,
                    entity_id,
                    principal.user_id,
                    expires_at.isoformat(),
                    category="locks",
                )
                return LockAcquireResult(outcome=LockOutcome.CREATED, lock=lock)

        if existing.holder_id == principal.user_id:
            outcome = LockOutcome.EXTENDED
        elif existing.is_expired(now):
            outcome = LockOutcome.TOOK_OVER
        else:
            flow_info(
                logger,
                "record_lock_denied entity=%s/%s requester=%s holder=%s expires_at=%s",
                entity_type,
                entity_id,
                principal.user_id,
                existing.holder_id,
                existing.expires_at.isoformat(),
                category="locks",
            )
            return LockAcquireResult(outcome=LockOutcome.DENIED, lock=existing)

        previous_holder = existing.holder_id
        existing.holder_id = principal.user_id
        existing.holder_name = principal.display_name
        existing.acquired_at = now
        existing.expires_at = expires_at
        self.db.flush()
        flow_info(
            logger,
            "record_lock_%s entity=%s/%s holder=%s previous_holder=%s expires_at=%s",
            outcome.value,
            entity_type,
            entity_id,
            principal.user_id,
            previous_holder,
            expires_at.isoformat(),
            category="locks",
        )
        return LockAcquireResult(outcome=outcome, lock=existing)

    def release(
        self,
        *,
        entity_type: str,
        entity_id: str,
        principal: Principal | None,
    ) -> bool:
        principal = self._require_principal(principal)
        entity_type, entity_id = self._normalized_ref(entity_type, entity_id)
        result = self.db.execute(
            delete(RecordLock)
            .where(RecordLock.entity_type == entity_type)
            .where(RecordLock.entity_id == entity_id)
            .where(RecordLock.holder_id == principal.user_id)
        )
        released = (result.rowcount or 0) > 0
        flow_info(
            logger,
            "record_lock_release entity=%s/%s holder=%s released=%s",
            entity_type,
            entity_id,
            principal.user_id,
            released,
            category="locks",
        )
        return released

    def release_all(self, *, principal: Principal | None) -> int:
        principal = self._require_principal(principal)
        result = self.db.execute(
            delete(RecordLock)
            .where(RecordLock.holder_id == principal.user_id)
        )
        count = int(result.rowcount or 0)
        flow_info(
            logger,
            "record_lock_release_all holder=%s released=%s",
            principal.user_id,
            count,
            category="locks",
        )
        return count

    def check(
        self,
        *,
        entity_type: str,
        entity_id: str,
        principal: Principal | None,
    ) -> LockStatus:
        principal = self._require_principal(principal)
        entity_type, entity_id = self._normalized_ref(entity_type, entity_id)
        lock = self._lock_row(entity_type=entity_type, entity_id=entity_id, for_update=False)
        if lock is None or lock.is_expired(self._now()):
            return LockStatus(locked=False)
        return LockStatus(locked=True, is_mine=lock.holder_id == principal.user_id, lock=lock)

    def list_held(self, *, principal: Principal | None) -> list[RecordLock]:
        principal = self._require_principal(principal)
        rows = self.db.execute(
            select(RecordLock)
            .where(RecordLock.holder_id == principal.user_id)
            .where(RecordLock.expires_at > self._now())
            .order_by(RecordLock.expires_at.asc(), RecordLock.id.asc())
        ).scalars()
        return list(rows)

    def cleanup_expired(self) -> int:
        result = self.db.execute(
            delete(RecordLock)
            .where(RecordLock.expires_at <= self._now())
        )
        return int(result.rowcount or 0)

    def validate_for_write(
        self,
        *,
        entity_type: str,
        entity_id: str,
        principal: Principal | None,
    ) -> RecordLock | None:
        if not settings.RECORD_LOCK_ENFORCE_WRITES:
            return None

        principal = self._require_principal(principal)
        entity_type, entity_id = self._normalized_ref(entity_type, entity_id)
        lock = self._lock_row(entity_type=entity_type, entity_id=entity_id, for_update=True)
        if lock is None or lock.is_expired(self._now()):
            raise RecordLockFailure(
                code="LOCK_REQUIRED",
                message="Edit lock is required for save.",
                status_code=409,
            )
        if lock.holder_id != principal.user_id:
            raise RecordLockFailure(
                code="LOCK_NOT_OWNER",
                message=DENIED_MESSAGE,
                status_code=409,
                locked_by=lock.holder_id,
                locked_by_name=lock.holder_name,
                expires_at=lock.expires_at,
            )
        return lock
