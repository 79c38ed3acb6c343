"""Server-Sent Events adapter for analysis progress."""
import asyncio
import json
import logging
from typing import AsyncIterator, Optional

from fastapi import Request

from casefusion.config import settings
from casefusion.services.progress_bus import ProgressBus, Subscription

logger = logging.getLogger(__name__)


def sse_message(payload: dict) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


async def progress_event_stream(
    request: Request,
    bus: ProgressBus,
    subscription: Subscription,
    heartbeat_seconds: Optional[float] = None,
) -> AsyncIterator[str]:
    """Relay one subscription as SSE frames.

    Emits ``connected`` first, then every progress event as-is, with a
    ``heartbeat`` every ``heartbeat_seconds`` whether or not progress is
    flowing. Ends with ``complete`` or ``error``. Leaving the stream only
    detaches this reader; the run keeps going.
    """
    heartbeat = heartbeat_seconds or settings.sse_heartbeat_seconds
    loop = asyncio.get_running_loop()
    next_heartbeat = loop.time() + heartbeat
    try:
        yield sse_message({"type": "connected"})
        while True:
            if await request.is_disconnected():
                logger.info(f"Progress stream client disconnected for case {bus.case_id}")
                break
            now = loop.time()
            if now >= next_heartbeat:
                yield sse_message({"type": "heartbeat"})
                next_heartbeat = now + heartbeat
            try:
                progress = await subscription.get(timeout=max(0.0, next_heartbeat - loop.time()))
            except asyncio.TimeoutError:
                continue

            if progress is None:
                if subscription.dropped:
                    logger.warning(f"Progress stream for case {bus.case_id} fell behind and was dropped")
                elif bus.error:
                    yield sse_message({
                        "type": "error",
                        "error": bus.error,
                        "step": "Analysis failed",
                        "status": "error",
                    })
                else:
                    yield sse_message({"type": "complete"})
                break

            yield sse_message(progress.model_dump(mode="json", by_alias=True, exclude_none=True))
    finally:
        subscription.close()
