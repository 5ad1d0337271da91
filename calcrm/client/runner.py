import asyncio
import logging
from typing import Optional

from calcrm.client.backend import SessionExpired
from calcrm.client.edit_session import EditSession

logger = logging.getLogger(__name__)


async def run_session(
    session: EditSession,
    *,
    interval: float = 1.0,
    stop: Optional[asyncio.Event] = None,
) -> None:
    """
    Drive `session.run_due` until the session is closed or `stop` is set.

    Backend calls block, so each tick runs in a worker thread. If a tick
    raises (including `SessionExpired`), the session is closed, releasing
    a held lock best-effort, before the error propagates.
    """
    stop = stop or asyncio.Event()
    finished = False
    try:
        while not session.closed and not stop.is_set():
            try:
                await asyncio.to_thread(session.run_due)
            except SessionExpired:
                logger.warning(
                    "edit_session_expired entity=%s/%s",
                    session.entity_type,
                    session.entity_id,
                )
                raise
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
        finished = True
    finally:
        if not finished and not session.closed:
            logger.warning(
                "edit_session_driver_stopped entity=%s/%s state=%s",
                session.entity_type,
                session.entity_id,
                session.state.value,
            )
            await asyncio.to_thread(session.close)
