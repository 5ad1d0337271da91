from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from calcrm.client.backend import (
    CoordinationBackend,
    CoordinationUnavailable,
    RequestRejected,
    SessionExpired,
)
from calcrm.client.presence_tracker import PresenceTracker
from calcrm.core.clock import Clock, utcnow
from calcrm.core.config import settings
from calcrm.schemas.entities import EntityOut
from calcrm.schemas.record_lock import LockAcquireResponse
from calcrm.services.record_lock_service import RecordLockFailure
from calcrm.services.version_guard import VersionConflict

logger = logging.getLogger(__name__)

LISTENER_EVENTS = ("lock_lost", "denied", "conflict", "degraded", "state_change")


class EditState(str, Enum):
    VIEWING = "viewing"
    EDITING = "editing"
    SAVING = "saving"


class InvalidEditState(RuntimeError):
    pass


@dataclass
class SaveResult:
    saved: bool
    entity: EntityOut | None = None
    conflict: VersionConflict | None = None
    lock_lost: bool = False


class EditSession:
    """
    Viewing -> Editing -> Saving -> Viewing for one record.

    Entering Editing needs a successful acquire. While Editing, `run_due`
    re-acquires every `extend_seconds`; a denied extension means another
    principal took the record over, so local edits are discarded and the
    session drops back to Viewing ("lock lost"). Transient failures never
    tear the session down; after `degraded_after` consecutive failures of
    lock extension (or of the attached presence tracker's heartbeats) the
    `degraded` listeners fire once until a call succeeds again.
    """

    def __init__(
        self,
        backend: CoordinationBackend,
        entity_type: str,
        entity_id: str,
        *,
        version: int | None = None,
        duration_minutes: int | None = None,
        extend_seconds: float | None = None,
        degraded_after: int = 3,
        presence: PresenceTracker | None = None,
        clock: Clock | None = None,
    ):
        self.backend = backend
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.version = version
        self.duration_minutes = duration_minutes
        self.extend_interval = timedelta(
            seconds=extend_seconds or settings.RECORD_LOCK_EXTEND_SECONDS
        )
        self.degraded_after = max(1, int(degraded_after))
        self.presence = presence
        self._clock = clock or utcnow

        self.state = EditState.VIEWING
        self.draft: dict[str, Any] = {}
        self.lock_expires_at: datetime | None = None
        self.next_extend_at: datetime | None = None
        self.last_denial: LockAcquireResponse | None = None
        self.consecutive_failures = 0
        self._lock_degraded = False
        self.closed = False
        self._listeners: dict[str, list[Callable[..., None]]] = defaultdict(list)
        if presence is not None:
            presence.on_degraded(self._presence_degraded)

    @property
    def degraded(self) -> bool:
        """Lock extensions or presence heartbeats are failing repeatedly."""
        presence_degraded = self.presence is not None and self.presence.degraded
        return self._lock_degraded or presence_degraded

    # listeners

    def on(self, event: str, callback: Callable[..., None]) -> None:
        if event not in LISTENER_EVENTS:
            raise ValueError(f"Unknown event '{event}'.")
        self._listeners[event].append(callback)

    def _emit(self, event: str, *args) -> None:
        for callback in list(self._listeners[event]):
            callback(self, *args)

    def _set_state(self, state: EditState) -> None:
        if state == self.state:
            return
        previous = self.state
        self.state = state
        if self.presence is not None:
            self.presence.set_editing(state != EditState.VIEWING)
        logger.debug(
            "edit_session_state entity=%s/%s from=%s to=%s",
            self.entity_type,
            self.entity_id,
            previous.value,
            state.value,
        )
        self._emit("state_change", previous, state)

    # record data

    def observe(self, entity: EntityOut) -> None:
        """Record the version the user is looking at (initial load or refresh)."""
        self.version = int(entity.version)

    def set_field(self, name: str, value: Any) -> None:
        if self.state != EditState.EDITING:
            raise InvalidEditState("Fields can only change while editing.")
        self.draft[name] = value

    def update_fields(self, changes: dict[str, Any]) -> None:
        for name, value in changes.items():
            self.set_field(name, value)

    # lock lifecycle

    def check_lock(self):
        return self.backend.check(self.entity_type, self.entity_id)

    def begin_edit(self, now: datetime | None = None) -> LockAcquireResponse:
        """
        Try to enter Editing. A denial is returned (and sent to `denied`
        listeners), never raised; infrastructure errors propagate.
        """
        if self.closed:
            raise InvalidEditState("Session is closed.")
        if self.state != EditState.VIEWING:
            raise InvalidEditState(f"Cannot begin editing from {self.state.value}.")

        now = now or self._clock()
        result = self.backend.acquire(self.entity_type, self.entity_id, self.duration_minutes)
        if not result.success:
            self.last_denial = result
            self._emit("denied", result)
            return result

        self.last_denial = None
        self.draft = {}
        self.lock_expires_at = result.expires_at
        self.next_extend_at = now + self.extend_interval
        self._record_success()
        self._set_state(EditState.EDITING)
        return result

    def extend(self, now: datetime | None = None) -> LockAcquireResponse | None:
        now = now or self._clock()
        self.next_extend_at = now + self.extend_interval
        try:
            result = self.backend.acquire(self.entity_type, self.entity_id, self.duration_minutes)
        except CoordinationUnavailable as exc:
            self._record_failure(exc)
            return None

        self._record_success()
        if not result.success:
            self._lose_lock(result)
            return result
        self.lock_expires_at = result.expires_at
        return result

    def _record_failure(self, exc: Exception) -> None:
        self.consecutive_failures += 1
        logger.warning(
            "lock_extend_failed entity=%s/%s failures=%s error=%s",
            self.entity_type,
            self.entity_id,
            self.consecutive_failures,
            exc,
        )
        if not self._lock_degraded and self.consecutive_failures >= self.degraded_after:
            self._lock_degraded = True
            self._emit("degraded", self.consecutive_failures)

    def _presence_degraded(self, tracker: PresenceTracker, failures: int) -> None:
        logger.warning(
            "presence_degraded entity=%s/%s failures=%s",
            self.entity_type,
            self.entity_id,
            failures,
        )
        self._emit("degraded", failures)

    def _record_success(self) -> None:
        self.consecutive_failures = 0
        self._lock_degraded = False

    def _lose_lock(self, result: LockAcquireResponse | None) -> None:
        logger.info(
            "lock_lost entity=%s/%s taken_by=%s discarded_fields=%s",
            self.entity_type,
            self.entity_id,
            result.locked_by if result else "-",
            len(self.draft),
        )
        self.draft = {}
        self.lock_expires_at = None
        self.next_extend_at = None
        self._set_state(EditState.VIEWING)
        self._emit("lock_lost", result)

    def _release_quietly(self) -> bool:
        try:
            return self.backend.release(self.entity_type, self.entity_id)
        except (CoordinationUnavailable, RequestRejected, SessionExpired) as exc:
            # Lock will expire on its own.
            logger.warning(
                "lock_release_failed entity=%s/%s error=%s",
                self.entity_type,
                self.entity_id,
                exc,
            )
            return False

    def cancel(self) -> None:
        if self.state != EditState.EDITING:
            return
        self._release_quietly()
        self.draft = {}
        self.lock_expires_at = None
        self.next_extend_at = None
        self._set_state(EditState.VIEWING)

    def save(self) -> SaveResult:
        """
        Submit the draft with the last observed version.

        On conflict the session stays in Editing with the draft intact; the
        caller should refresh and `observe` the new version before retrying.
        Infrastructure errors propagate, also leaving the draft intact.
        """
        if self.state != EditState.EDITING:
            raise InvalidEditState(f"Cannot save from {self.state.value}.")
        if self.version is None:
            raise InvalidEditState("No observed version; load the record first.")

        self._set_state(EditState.SAVING)
        try:
            entity = self.backend.versioned_update(
                self.entity_type,
                self.entity_id,
                dict(self.draft),
                self.version,
            )
        except VersionConflict as exc:
            self._set_state(EditState.EDITING)
            self._emit("conflict", exc)
            return SaveResult(saved=False, conflict=exc)
        except RecordLockFailure as exc:
            self._lose_lock(
                LockAcquireResponse(
                    success=False,
                    error=exc.message,
                    locked_by=exc.locked_by,
                    locked_by_name=exc.locked_by_name,
                    expires_at=exc.expires_at,
                )
            )
            return SaveResult(saved=False, lock_lost=True)
        except Exception:
            self._set_state(EditState.EDITING)
            raise

        self.version = int(entity.version)
        self.draft = {}
        self._release_quietly()
        self.lock_expires_at = None
        self.next_extend_at = None
        self._set_state(EditState.VIEWING)
        return SaveResult(saved=True, entity=entity)

    # scheduling

    def run_due(self, now: datetime | None = None) -> None:
        """Run whatever is due at `now`: lock extension and presence heartbeat."""
        now = now or self._clock()
        if (
            self.state == EditState.EDITING
            and self.next_extend_at is not None
            and now >= self.next_extend_at
        ):
            self.extend(now)
        if self.presence is not None:
            self.presence.run_due(now)

    def next_due_at(self) -> datetime | None:
        candidates = []
        if self.state == EditState.EDITING and self.next_extend_at is not None:
            candidates.append(self.next_extend_at)
        if self.presence is not None:
            presence_due = self.presence.next_due_at()
            if presence_due is not None:
                candidates.append(presence_due)
        return min(candidates) if candidates else None

    def close(self) -> None:
        """Teardown: release a held lock best-effort and stop scheduling."""
        if self.closed:
            return
        if self.state != EditState.VIEWING:
            self._release_quietly()
            self.draft = {}
            self.lock_expires_at = None
            self.next_extend_at = None
            self._set_state(EditState.VIEWING)
        self.closed = True

    def __enter__(self) -> "EditSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
