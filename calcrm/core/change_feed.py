"""
In-process change feed for lock and presence rows.

Sync endpoints publish after commit; SSE subscribers each own an asyncio
queue bound to their event loop. Delivery is thread-safe and best effort:
a full queue drops its oldest event, and delete events carry only the
identity, so consumers always re-read through check/list-viewers.
"""
import asyncio
import logging
import threading
import uuid
from collections import defaultdict
from typing import Dict, Optional, Set, Tuple

from calcrm.core.clock import utcnow
from calcrm.core.config import settings

logger = logging.getLogger(__name__)

EntityKey = Tuple[str, str]


class ChangeSubscription:
    """A single SSE connection interested in one entity identity."""

    def __init__(self, key: EntityKey, loop: asyncio.AbstractEventLoop, maxsize: int):
        self.key = key
        self.subscription_id = str(uuid.uuid4())
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, maxsize))
        self.dropped = 0

    def _offer(self, event: dict) -> None:
        # Runs on the subscriber's loop.
        if self.queue.full():
            try:
                self.queue.get_nowait()
                self.dropped += 1
            except asyncio.QueueEmpty:
                pass
        self.queue.put_nowait(event)

    def deliver(self, event: dict) -> None:
        try:
            self.loop.call_soon_threadsafe(self._offer, event)
        except RuntimeError:
            # Loop already closed; the subscriber is gone.
            logger.debug("change_feed_deliver_skipped subscription=%s", self.subscription_id)


class ChangeFeed:
    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscriptions: Dict[EntityKey, Set[ChangeSubscription]] = defaultdict(set)
        self._lock = threading.Lock()

    def subscribe(self, entity_type: str, entity_id: str) -> ChangeSubscription:
        """Register a subscriber; must be called from the consuming event loop."""
        key = (entity_type, entity_id)
        subscription = ChangeSubscription(key, asyncio.get_running_loop(), self.queue_size)
        with self._lock:
            self._subscriptions[key].add(subscription)
        logger.info(
            "change_feed_subscribed entity=%s/%s subscription=%s",
            entity_type,
            entity_id,
            subscription.subscription_id,
        )
        return subscription

    def unsubscribe(self, subscription: ChangeSubscription) -> None:
        with self._lock:
            subscribers = self._subscriptions.get(subscription.key)
            if subscribers is not None:
                subscribers.discard(subscription)
                if not subscribers:
                    del self._subscriptions[subscription.key]
        logger.info(
            "change_feed_unsubscribed entity=%s/%s subscription=%s dropped=%s",
            subscription.key[0],
            subscription.key[1],
            subscription.subscription_id,
            subscription.dropped,
        )

    def publish(
        self,
        *,
        kind: str,
        action: str,
        entity_type: str,
        entity_id: str,
        payload: Optional[dict] = None,
    ) -> int:
        """
        Fan an event out to every subscriber of the identity.

        `kind` is "lock" or "presence"; `action` is "upsert" or "delete".
        Delete events never carry row data.
        """
        event = {
            "event": kind,
            "data": {
                "action": action,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "at": utcnow().isoformat(),
            },
        }
        if action != "delete" and payload:
            event["data"]["row"] = payload

        with self._lock:
            subscribers = list(self._subscriptions.get((entity_type, entity_id), ()))
        for subscription in subscribers:
            subscription.deliver(event)
        return len(subscribers)

    def subscriber_count(self, entity_type: Optional[str] = None, entity_id: Optional[str] = None) -> int:
        with self._lock:
            if entity_type is not None and entity_id is not None:
                return len(self._subscriptions.get((entity_type, entity_id), ()))
            return sum(len(subs) for subs in self._subscriptions.values())


change_feed = ChangeFeed(queue_size=settings.CHANGE_FEED_QUEUE_SIZE)


def publish_change(
    *,
    kind: str,
    action: str,
    entity_type: Optional[str],
    entity_id: Optional[str],
    payload: Optional[dict] = None,
) -> None:
    """Publish helper used by endpoints; a no-op when disabled or unscoped."""
    if not settings.CHANGE_FEED_ENABLED or not entity_type or not entity_id:
        return
    change_feed.publish(
        kind=kind,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload,
    )
