# pagesmith/services/events.py
"""
Progress events and the queue-backed channel that carries them to one client.

The orchestrator publishes without ever waiting on the reader. When the
reader goes away the channel is unsubscribed and later events are dropped;
generation itself is unaffected.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

from pagesmith.schemas import CamelModel

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

_END = object()


class ProgressEvent(CamelModel):
    type: str  # start | progress | complete | error | finish
    stage: Optional[str] = None  # cover | content
    current: Optional[int] = None
    total: Optional[int] = None
    page_index: Optional[int] = None
    image_url: Optional[str] = None
    message: Optional[str] = None
    code: Optional[str] = None
    task_id: Optional[str] = None
    version: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_sse(self) -> str:
        return f"event: {self.type}\ndata: {self.model_dump_json(by_alias=True, exclude_none=True)}\n\n"


class EventChannel:
    def __init__(self, heartbeat: float = 15.0):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._subscribed = True
        self._heartbeat = heartbeat

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscribed(self) -> bool:
        return self._subscribed

    def publish(self, event: ProgressEvent) -> None:
        if self._closed or not self._subscribed:
            return
        self._queue.put_nowait(event)

    def close(self) -> None:
        """No more events will be published; the reader drains what is queued."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_END)

    def unsubscribe(self) -> None:
        """The reader has gone; drop whatever is queued and everything after."""
        self._subscribed = False
        while not self._queue.empty():
            self._queue.get_nowait()

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            yield item

    async def sse(self) -> AsyncIterator[str]:
        """SSE frames with a comment heartbeat while the pipeline is quiet."""
        try:
            while True:
                try:
                    item = await asyncio.wait_for(self._queue.get(), timeout=self._heartbeat)
                except asyncio.TimeoutError:
                    yield f": ping {datetime.now(timezone.utc).isoformat()}\n\n"
                    continue
                if item is _END:
                    break
                yield item.to_sse()
        finally:
            if not self._closed:
                logger.info("Event stream reader went away before finish; generation continues")
            self.unsubscribe()


__all__ = ["ProgressEvent", "EventChannel", "SSE_HEADERS"]
