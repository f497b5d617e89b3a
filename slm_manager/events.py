import asyncio
import logging
from typing import Any, Callable, Dict, List

from .log_buffer import utc_now


logger = logging.getLogger("uvicorn.error")

Subscriber = Callable[[Dict[str, Any]], None]


class EventBus:
    """In-memory fan-out of state changes to callbacks and SSE queues."""

    def __init__(self) -> None:
        self.callbacks: List[Subscriber] = []
        self.queues: List[asyncio.Queue] = []
        self.seq = 0

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self.callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self.callbacks:
                self.callbacks.remove(callback)

        return unsubscribe

    def subscribe_queue(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self.queues.append(queue)
        return queue

    def unsubscribe_queue(self, queue: asyncio.Queue) -> None:
        if queue in self.queues:
            self.queues.remove(queue)

    def publish(self, kind: str, payload: Any = None) -> Dict[str, Any]:
        self.seq += 1
        event = {"seq": self.seq, "type": kind, "payload": payload, "created_at": utc_now()}
        for callback in list(self.callbacks):
            try:
                callback(event)
            except Exception as exc:
                logger.warning("Event subscriber failed on %s: %s", kind, exc)
        for queue in list(self.queues):
            queue.put_nowait(event)
        return event
