from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from calcrm.client.backend import CoordinationBackend, CoordinationUnavailable
from calcrm.core.clock import Clock, utcnow
from calcrm.core.config import settings
from calcrm.schemas.presence import ViewerView

logger = logging.getLogger(__name__)


class PresenceTracker:
    """
    Client-side presence for one open page.

    Status is derived: "editing" while an edit session holds the record,
    otherwise "idle" after `idle_seconds` without user activity, otherwise
    "online". Heartbeats go out every `heartbeat_seconds` while the view is
    visible, and immediately whenever the derived status or location changes.
    Nothing is sent while hidden.
    """

    def __init__(
        self,
        backend: CoordinationBackend,
        *,
        current_page: str,
        entity_type: str | None = None,
        entity_id: str | None = None,
        heartbeat_seconds: float | None = None,
        idle_seconds: float | None = None,
        degraded_after: int = 3,
        clock: Clock | None = None,
    ):
        self.backend = backend
        self.current_page = current_page
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.heartbeat_interval = timedelta(
            seconds=heartbeat_seconds or settings.PRESENCE_HEARTBEAT_SECONDS
        )
        self.idle_after = timedelta(seconds=idle_seconds or settings.PRESENCE_IDLE_SECONDS)
        self.degraded_after = max(1, int(degraded_after))
        self._clock = clock or utcnow

        now = self._clock()
        self.visible = True
        self.editing = False
        self.last_activity = now
        self.last_sent_at: datetime | None = None
        self.last_sent_status: str | None = None
        self.consecutive_failures = 0
        self.degraded = False
        self._force_send = True
        self._degraded_listeners: list[Callable[..., None]] = []

    def on_degraded(self, callback: Callable[..., None]) -> None:
        """`callback(tracker, failures)` once per run of consecutive failures."""
        self._degraded_listeners.append(callback)

    @property
    def has_entity(self) -> bool:
        return self.entity_type is not None and self.entity_id is not None

    def status(self, now: datetime | None = None) -> str:
        if self.editing:
            return "editing"
        now = now or self._clock()
        if now - self.last_activity >= self.idle_after:
            return "idle"
        return "online"

    def record_activity(self, now: datetime | None = None) -> None:
        """User input (key, click, scroll) resets the idle timer."""
        now = now or self._clock()
        if self.status(now) == "idle":
            self._force_send = True
        self.last_activity = now

    def set_editing(self, editing: bool) -> None:
        if self.editing != editing:
            self.editing = editing
            self._force_send = True

    def set_visible(self, visible: bool) -> None:
        if visible and not self.visible:
            self._force_send = True
        self.visible = visible

    def navigate(
        self,
        current_page: str,
        entity_type: str | None = None,
        entity_id: str | None = None,
    ) -> None:
        self.current_page = current_page
        self.entity_type = entity_type
        self.entity_id = entity_id
        self._force_send = True

    def heartbeat_due(self, now: datetime | None = None) -> bool:
        if not self.visible:
            return False
        now = now or self._clock()
        if self._force_send or self.last_sent_at is None:
            return True
        if self.status(now) != self.last_sent_status:
            return True
        return now - self.last_sent_at >= self.heartbeat_interval

    def next_due_at(self) -> datetime | None:
        """Earliest time a heartbeat or idle transition needs attention."""
        if not self.visible:
            return None
        if self._force_send or self.last_sent_at is None:
            return self._clock()
        candidates = [self.last_sent_at + self.heartbeat_interval]
        if not self.editing and self.last_sent_status != "idle":
            candidates.append(self.last_activity + self.idle_after)
        return min(candidates)

    def send(self, now: datetime | None = None) -> bool:
        """
        Push the current presence. Transient failures are counted and
        retried at the next cadence tick; `SessionExpired` propagates.
        """
        now = now or self._clock()
        status = self.status(now)
        try:
            self.backend.update_presence(
                self.current_page,
                self.entity_type if self.has_entity else None,
                self.entity_id if self.has_entity else None,
                status,
            )
        except CoordinationUnavailable as exc:
            self.consecutive_failures += 1
            # Retried on the regular cadence.
            self.last_sent_at = now
            self.last_sent_status = status
            self._force_send = False
            logger.warning(
                "presence_heartbeat_failed page=%s failures=%s error=%s",
                self.current_page,
                self.consecutive_failures,
                exc,
            )
            if not self.degraded and self.consecutive_failures >= self.degraded_after:
                self.degraded = True
                for callback in list(self._degraded_listeners):
                    callback(self, self.consecutive_failures)
            return False

        self.consecutive_failures = 0
        self.degraded = False
        self.last_sent_at = now
        self.last_sent_status = status
        self._force_send = False
        return True

    def run_due(self, now: datetime | None = None) -> bool:
        now = now or self._clock()
        if not self.heartbeat_due(now):
            return False
        return self.send(now)

    def viewers(self) -> list[ViewerView]:
        if not self.has_entity:
            return []
        return self.backend.list_viewers(self.entity_type, self.entity_id)
