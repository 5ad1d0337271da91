import asyncio
import json
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from calcrm.api.deps.request_identity import get_current_principal
from calcrm.core.change_feed import change_feed
from calcrm.core.config import settings
from calcrm.schemas.record_lock import normalize_entity_id, normalize_entity_type
from calcrm.services.identity_service import Principal

logger = logging.getLogger(__name__)

router = APIRouter()


def _format_event(event_type: str, data: dict) -> str:
    return f"event: {event_type}\ndata: {json.dumps(data)}\n\n"


@router.get("/{entity_type}/{entity_id}/stream")
async def stream_entity_changes(
    entity_type: str,
    entity_id: str,
    principal: Principal = Depends(get_current_principal),
):
    """
    Server-Sent Events for lock and presence changes on one record.

    Events: `connected`, `lock`, `presence`, and `ping` keepalives. Payloads
    are hints only; delete events carry no row data, so clients re-read
    lock status and viewers through the regular endpoints.
    """
    if not settings.CHANGE_FEED_ENABLED:
        raise HTTPException(status_code=404, detail="Change feed is disabled.")
    try:
        entity_type = normalize_entity_type(entity_type)
        entity_id = normalize_entity_id(entity_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    subscription = change_feed.subscribe(entity_type, entity_id)
    keepalive = max(1.0, float(settings.CHANGE_FEED_KEEPALIVE_SECONDS))

    async def event_generator():
        try:
            yield _format_event(
                "connected",
                {
                    "entity_type": entity_type,
                    "entity_id": entity_id,
                    "subscription_id": subscription.subscription_id,
                    "user_id": principal.user_id,
                },
            )
            while True:
                try:
                    event = await asyncio.wait_for(subscription.queue.get(), timeout=keepalive)
                except asyncio.TimeoutError:
                    yield _format_event("ping", {})
                    continue
                yield _format_event(event.get("event", "message"), event.get("data", {}))
        except asyncio.CancelledError:
            logger.info("change_stream_cancelled subscription=%s", subscription.subscription_id)
            raise
        finally:
            change_feed.unsubscribe(subscription)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
