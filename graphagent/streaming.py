import asyncio
import inspect
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel

logger = logging.getLogger("uvicorn.error")

Observer = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]

AGENT_DELEGATION_CREATED = "AGENT_DELEGATION_CREATED"
AGENT_DELEGATION_UPDATED = "AGENT_DELEGATION_UPDATED"
AGENT_DELEGATION_DELETED = "AGENT_DELEGATION_DELETED"


class EventBus:
    """In-memory fan-out of ledger change notifications to global SSE subscribers."""

    def __init__(self) -> None:
        self.global_subscribers: List[asyncio.Queue] = []
        self.lock = asyncio.Lock()

    async def emit(self, event_type: str, data: Optional[dict] = None) -> dict:
        event = {"type": event_type, "data": dict(data or {}), "timestamp": int(time.time() * 1000)}
        async with self.lock:
            queues = list(self.global_subscribers)
        for q in queues:
            await q.put(event)
        return event

    async def subscribe_global(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.global_subscribers.append(queue)
        return queue

    async def unsubscribe_global(self, queue: asyncio.Queue) -> None:
        async with self.lock:
            if queue in self.global_subscribers:
                self.global_subscribers.remove(queue)


class ObserverClosed(Exception):
    pass


class QueueObserver:
    """Adapts an asyncio.Queue to the observer protocol; raises once closed."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def __call__(self, event: Dict[str, Any]) -> None:
        if self.closed:
            raise ObserverClosed("stream consumer disconnected")
        self.queue.put_nowait(event)

    def close(self) -> None:
        self.closed = True


def sanitize_payload(payload: Any) -> Dict[str, Any]:
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json")
    try:
        return json.loads(json.dumps(payload))
    except (TypeError, ValueError):
        logger.warning("Stream payload not JSON serializable; sending string form")
    try:
        return json.loads(json.dumps(payload, default=str))
    except (TypeError, ValueError):
        return {"type": "unserializable", "data": str(payload)}


class DelegationStreamBroadcaster:
    """Per-session, unbuffered, at-most-once push of stream events.

    Observers registered after an event was broadcast never see it. An observer whose
    delivery raises is dropped.
    """

    def __init__(self) -> None:
        self._observers: Dict[str, List[Observer]] = {}

    def subscribe(self, session_id: str, observer: Observer) -> Observer:
        self._observers.setdefault(session_id, []).append(observer)
        return observer

    def subscribe_queue(self, session_id: str) -> QueueObserver:
        observer = QueueObserver()
        self.subscribe(session_id, observer)
        return observer

    def unsubscribe(self, session_id: str, observer: Observer) -> None:
        observers = self._observers.get(session_id, [])
        if observer in observers:
            observers.remove(observer)
        if not observers:
            self._observers.pop(session_id, None)

    def connection_count(self, session_id: str) -> int:
        return len(self._observers.get(session_id, []))

    async def broadcast(self, session_id: str, payload: Any) -> int:
        observers = list(self._observers.get(session_id, []))
        if not observers:
            return 0
        data = sanitize_payload(payload)
        delivered = 0
        for observer in observers:
            try:
                result = observer(data)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as exc:
                logger.warning("Dropping stream observer for %s: %s", session_id, exc)
                self.unsubscribe(session_id, observer)
        return delivered
