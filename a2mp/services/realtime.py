"""
In-process realtime broadcast of meeting events.

Three events per meeting: "turn", "whiteboard", "status". Delivery is best
effort: no acknowledgement, no replay. A slow subscriber whose queue is full
misses events and must re-fetch state through the status endpoint.
"""
import asyncio
import json
from collections import defaultdict
from typing import Any, AsyncIterator, Dict, Optional, Set

from a2mp.utils.logger import get_logger

logger = get_logger(__name__)

SUBSCRIBER_QUEUE_SIZE = 100
KEEPALIVE_SECONDS = 15.0


class Broadcaster:
    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: Dict[str, Set[asyncio.Queue]] = defaultdict(set)

    def subscribe(self, meeting_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers[meeting_id].add(queue)
        return queue

    def unsubscribe(self, meeting_id: str, queue: asyncio.Queue) -> None:
        subscribers = self._subscribers.get(meeting_id)
        if not subscribers:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._subscribers[meeting_id]

    def subscriber_count(self, meeting_id: str) -> int:
        return len(self._subscribers.get(meeting_id, ()))

    def publish(self, meeting_id: str, event: str, data: Any) -> None:
        for queue in list(self._subscribers.get(meeting_id, ())):
            try:
                queue.put_nowait({"event": event, "data": data})
            except asyncio.QueueFull:
                logger.warning(f"[Realtime] Dropping {event} event for slow subscriber on {meeting_id}")

    # Event helpers

    def broadcast_turn(self, meeting_id: str, turn: dict) -> None:
        self.publish(meeting_id, "turn", turn)

    def broadcast_whiteboard(self, meeting_id: str, whiteboard: dict) -> None:
        self.publish(meeting_id, "whiteboard", whiteboard)

    def broadcast_status(self, meeting_id: str, status: str) -> None:
        self.publish(meeting_id, "status", {"status": status})


def format_sse(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


async def event_stream(
    broadcaster: Broadcaster,
    meeting_id: str,
    keepalive: float = KEEPALIVE_SECONDS,
    initial: Optional[dict] = None,
) -> AsyncIterator[str]:
    """Server-sent event stream for one meeting"""
    queue = broadcaster.subscribe(meeting_id)
    try:
        if initial is not None:
            yield format_sse("status", initial)
        while True:
            try:
                message = await asyncio.wait_for(queue.get(), timeout=keepalive)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield format_sse(message["event"], message["data"])
    finally:
        broadcaster.unsubscribe(meeting_id, queue)
