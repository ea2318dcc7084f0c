"""
Event Bus Module

Ordered observer list used for swap lifecycle and vision state events.

Delivery Rules:
    1. emit() awaits every listener in registration order, one at a time
    2. Then every queue subscriber receives the event via put_nowait()
    3. A full subscriber queue drops its oldest event to make room
    4. A failing listener is logged and does not stop delivery

Because emit() returns only after delivery, a caller that emitted an event
knows that every listener has seen it. Tests subscribe a queue and await
events instead of sleeping.

Event Types:
    - SwapStarted / SwapProgress / SwapCompleted: ModelSwapManager
    - VisionStateChanged: VisionServer

Usage:
    bus = EventBus()
    bus.add_listener(lambda event: print(event))
    queue = bus.subscribe()
    await bus.emit(SwapProgress(percent=10, message="Stopping"))
    event = await queue.get()
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SwapStarted:
    from_role: str
    to_role: str
    estimated_seconds: int


@dataclass(frozen=True)
class SwapProgress:
    percent: int
    message: str


@dataclass(frozen=True)
class SwapCompleted:
    role: str
    success: bool
    duration_seconds: float
    error: Optional[str] = None


@dataclass(frozen=True)
class VisionStateChanged:
    old_state: str
    new_state: str


Listener = Callable[[Any], Any]


class EventBus:
    """Synchronous-order event dispatcher for asyncio code."""

    def __init__(self, queue_size: int = 100):
        self._listeners: List[Listener] = []
        self._queues: List[asyncio.Queue] = []
        self._queue_size = queue_size

    def add_listener(self, listener: Listener) -> None:
        """Register a sync or async callable receiving every event."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def subscribe(self) -> asyncio.Queue:
        """Get a queue that receives every event emitted from now on."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    async def emit(self, event: Any) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(
                    f"[Events] Listener failed for {type(event).__name__}: {e}"
                )

        for queue in list(self._queues):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)
