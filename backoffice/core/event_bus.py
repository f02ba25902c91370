"""
Event bus implementation using AsyncIO queues.
Provides pub/sub pattern for reacting to committed workflow changes.
"""

import asyncio
from typing import Callable, Awaitable, Dict, List
from collections import defaultdict
import structlog

from backoffice.models.schemas import EventType
from backoffice.config.settings import settings

logger = structlog.get_logger()


class EventBus:
    """
    Lightweight event bus using asyncio queues.
    Supports multiple subscribers per event type. Handler failures are logged
    and never reach the publisher.
    """

    def __init__(self, max_queue_size: int = None):
        self._queue: asyncio.Queue = asyncio.Queue(
            maxsize=max_queue_size or settings.event_bus_max_queue_size
        )
        self._handlers: Dict[EventType, List[Callable[[dict], Awaitable[None]]]] = defaultdict(list)
        self._running = False
        self._processor_task: asyncio.Task = None
        self._processed = 0
        self._failed = 0

    def subscribe(self, event_type: EventType, handler: Callable[[dict], Awaitable[None]]):
        """
        Subscribe a handler to an event type.

        Args:
            event_type: The event type to listen for
            handler: Async function that receives event data
        """
        self._handlers[event_type].append(handler)
        logger.info(
            "event_handler_subscribed",
            event_type=event_type.value,
            handler=handler.__name__,
            total_handlers=len(self._handlers[event_type]),
        )

    async def publish(self, event_type: EventType, data: dict):
        """
        Publish an event to the bus.

        Args:
            event_type: The type of event
            data: Event payload
        """
        try:
            self._queue.put_nowait({"type": event_type, "data": data})
            logger.debug("event_published", event_type=event_type.value, queue_size=self._queue.qsize())
        except asyncio.QueueFull:
            logger.error("event_queue_full", event_type=event_type.value, data=data)
            raise

    async def start(self):
        """Start the event processor"""
        if self._running:
            logger.warning("event_bus_already_running")
            return

        self._running = True
        self._processor_task = asyncio.create_task(self._process_events())
        logger.info("event_bus_started")

    async def stop(self):
        """Stop the event processor"""
        if not self._running:
            return

        self._running = False

        if self._processor_task:
            self._processor_task.cancel()
            try:
                await self._processor_task
            except asyncio.CancelledError:
                pass

        logger.info("event_bus_stopped", pending_events=self._queue.qsize())

    async def drain(self, timeout: float = 5.0):
        """Wait until every queued event has been handled"""
        await asyncio.wait_for(self._queue.join(), timeout=timeout)

    async def _process_events(self):
        """
        Background task that processes events from the queue.
        Runs handlers for each event type.
        """
        logger.info("event_processor_started")

        while self._running:
            try:
                # Wait for event with timeout to allow clean shutdown
                event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                logger.info("event_processor_cancelled")
                break

            try:
                await self._dispatch(event["type"], event["data"])
            except asyncio.CancelledError:
                logger.info("event_processor_cancelled")
                break
            except Exception as e:
                logger.error("event_processor_error", error=str(e), exc_info=True)
            finally:
                self._queue.task_done()

        logger.info("event_processor_stopped")

    async def _dispatch(self, event_type: EventType, event_data: dict):
        handlers = self._handlers.get(event_type, [])

        if not handlers:
            logger.debug("no_handlers_for_event", event_type=event_type.value)
            return

        logger.debug(
            "processing_event",
            event_type=event_type.value,
            handlers=len(handlers),
            data=event_data,
        )

        # Run all handlers concurrently
        await asyncio.gather(
            *(self._run_handler(handler, event_data, event_type) for handler in handlers)
        )

    async def _run_handler(self, handler: Callable, data: dict, event_type: EventType):
        """
        Run a single handler with error handling.
        """
        try:
            await handler(data)
            self._processed += 1
        except Exception as e:
            self._failed += 1
            logger.error(
                "event_handler_error",
                handler=handler.__name__,
                event_type=event_type.value,
                error=str(e),
                exc_info=True,
            )

    def get_stats(self) -> dict:
        """Get event bus statistics"""
        return {
            "running": self._running,
            "queue_size": self._queue.qsize(),
            "max_queue_size": self._queue.maxsize,
            "event_types": [event_type.value for event_type in self._handlers.keys()],
            "total_handlers": sum(len(handlers) for handlers in self._handlers.values()),
            "handled": self._processed,
            "failed": self._failed,
        }
