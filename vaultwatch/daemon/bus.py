"""Async event bus connecting the indexing core to its consumers."""

import asyncio
from typing import Dict, List, Callable, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime
from collections import defaultdict
from loguru import logger


# Event types published by the core
ITEM_INDEXED = "item.indexed"
ITEM_UPDATED = "item.updated"
ITEM_DELETED = "item.deleted"
STATS_UPDATED = "stats.updated"
SCAN_ERROR = "scan.error"
FOLDER_ADDED = "folder.added"
FOLDER_REMOVED = "folder.removed"
FOLDER_STATE = "folder.state"
EMBEDDING_PROGRESS = "embedding.progress"
EMBEDDING_COMPLETED = "embedding.completed"
EMBEDDING_FAILED = "embedding.failed"


@dataclass
class Event:
    """Base event class."""
    type: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=datetime.utcnow)
    source: Optional[str] = None
    correlation_id: Optional[str] = None


class EventBus:
    """
    Async pub/sub event bus for in-process communication.

    Event types follow pattern: category.action
    Examples: item.indexed, item.deleted, scan.error, embedding.progress

    Publishing never waits on consumers: ``emit_nowait`` enqueues and returns,
    and a single processor task fans events out to subscribers in order.
    """

    def __init__(self, maxsize: int = 10000):
        self._subscribers: Dict[str, List[Callable[[Event], Any]]] = defaultdict(list)
        self._event_queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._running = False
        self._processor_task: Optional[asyncio.Task] = None
        self._stats = defaultdict(int)

    @property
    def running(self) -> bool:
        return self._running

    def subscribe(self, event_pattern: str, handler: Callable[[Event], Any]) -> None:
        """
        Subscribe to events matching pattern.
        Pattern can use wildcards: 'item.*' matches all item events.
        """
        self._subscribers[event_pattern].append(handler)
        logger.debug(f"Subscribed handler to pattern: {event_pattern}")

    def unsubscribe(self, event_pattern: str, handler: Callable[[Event], Any]) -> None:
        """Unsubscribe handler from event pattern."""
        self._subscribers[event_pattern] = [
            h for h in self._subscribers[event_pattern] if h != handler
        ]

    async def emit(self, event: Event) -> None:
        """Emit an event to the bus."""
        self.emit_nowait(event)

    def emit_nowait(self, event: Event) -> bool:
        """
        Emit an event without waiting (non-async).
        Returns True if successful, False if queue is full.
        """
        try:
            self._event_queue.put_nowait(event)
            self._stats['emitted'] += 1
            return True
        except asyncio.QueueFull:
            logger.warning(f"Event queue full, dropping event: {event.type}")
            self._stats['dropped'] += 1
            return False

    def publish(self, event_type: str, source: Optional[str] = None, **data: Any) -> bool:
        """Shorthand for ``emit_nowait(Event(event_type, data))``."""
        return self.emit_nowait(Event(type=event_type, data=data, source=source))

    async def start(self) -> None:
        """Start the event processor."""
        if self._running:
            logger.warning("Event bus already running")
            return

        self._running = True
        self._processor_task = asyncio.create_task(self._process_events())
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Deliver pending events, then stop the processor."""
        if not self._running:
            return
        await self.drain()
        self._running = False
        if self._processor_task:
            self._processor_task.cancel()
            try:
                await self._processor_task
            except asyncio.CancelledError:
                pass
            self._processor_task = None
        logger.info("Event bus stopped")

    async def drain(self) -> None:
        """Wait until every queued event has been delivered."""
        if self._running:
            await self._event_queue.join()

    async def _process_events(self) -> None:
        """Process events from the queue."""
        while self._running:
            event = await self._event_queue.get()
            try:
                await self._dispatch(event)
                self._stats['processed'] += 1
            except Exception as e:
                logger.error(f"Error processing event: {e}")
                self._stats['processing_errors'] += 1
            finally:
                self._event_queue.task_done()

    async def _dispatch(self, event: Event) -> None:
        handlers = []
        for pattern, subscribed in list(self._subscribers.items()):
            if self._matches_pattern(event.type, pattern):
                handlers.extend(subscribed)

        if not handlers:
            return

        tasks = []
        for handler in handlers:
            if asyncio.iscoroutinefunction(handler):
                tasks.append(asyncio.create_task(handler(event)))
            else:
                tasks.append(asyncio.create_task(asyncio.to_thread(handler, event)))

        results = await asyncio.gather(*tasks, return_exceptions=True)

        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Handler error for event {event.type}: {result}")
                self._stats['handler_errors'] += 1

    def _matches_pattern(self, event_type: str, pattern: str) -> bool:
        """Check if event type matches subscription pattern."""
        if pattern == "*":
            return True
        if pattern.endswith(".*"):
            prefix = pattern[:-2]
            return event_type.startswith(prefix + ".")
        return event_type == pattern

    def get_stats(self) -> Dict[str, int]:
        """Get event bus statistics."""
        return dict(self._stats)

    def reset_stats(self) -> None:
        """Reset statistics."""
        self._stats.clear()
