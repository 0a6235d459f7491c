# keel_engine/events.py
"""
Pipeline lifecycle events.

``EventEmitter.emit`` never blocks the executor: events go onto a bounded
asyncio.Queue (dropped with a warning when full) and a background
dispatcher delivers them to subscribers. Subscriber failures are logged,
never propagated.
"""
import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

logger = logging.getLogger("keel.engine.events")


class EventType(str, Enum):
    PIPELINE_START = "pipeline:start"
    PIPELINE_COMPLETE = "pipeline:complete"
    PIPELINE_ERROR = "pipeline:error"
    STAGE_START = "stage:start"
    STAGE_PROGRESS = "stage:progress"
    STAGE_COMPLETE = "stage:complete"
    STAGE_ERROR = "stage:error"
    STAGE_RETRY = "stage:retry"
    CACHE_HIT = "cache:hit"
    LLM_REQUEST = "llm:request"
    LLM_RESPONSE = "llm:response"


@dataclass(frozen=True)
class PipelineEvent:
    type: EventType
    run_id: str = ""
    stage: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


EventHandler = Callable[[PipelineEvent], Union[None, Awaitable[None]]]


class EventEmitter:
    """
    Buffered fan-out of PipelineEvents.

    Parameters:
        max_queue: Buffered events before new ones are dropped.
    """

    def __init__(self, max_queue: int = 1000):
        self.max_queue = max_queue
        self._handlers: list[EventHandler] = []
        self._queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self.dropped = 0

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        """Register *handler*; returns a callable that unsubscribes it."""
        self._handlers.append(handler)
        return lambda: self.unsubscribe(handler)

    def unsubscribe(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def emit(
        self,
        event_type: EventType,
        run_id: str = "",
        stage: Optional[str] = None,
        **data: Any,
    ) -> None:
        """Queue an event for delivery. Safe to call from any coroutine."""
        if not self._handlers:
            return
        event = PipelineEvent(type=event_type, run_id=run_id, stage=stage, data=data)
        try:
            queue = self._ensure_dispatcher()
        except RuntimeError:
            logger.debug("No running loop; dropping %s", event_type.value)
            return
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Event queue full; dropped %s (total dropped: %d)", event_type.value, self.dropped)

    async def drain(self) -> None:
        """Wait until every queued event has been delivered."""
        if self._queue is not None and self._loop is asyncio.get_running_loop():
            await self._queue.join()

    async def aclose(self) -> None:
        """Deliver what is queued, then stop the dispatcher."""
        await self.drain()
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
        self._dispatcher = None
        self._queue = None
        self._loop = None

    # ── internals ───────────────────────────────────────────────────────

    def _ensure_dispatcher(self) -> asyncio.Queue:
        loop = asyncio.get_running_loop()
        if self._loop is not loop or self._queue is None:
            self._loop = loop
            self._queue = asyncio.Queue(maxsize=self.max_queue)
            self._dispatcher = None
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = loop.create_task(self._dispatch(self._queue), name="keel-event-dispatcher")
        return self._queue

    async def _dispatch(self, queue: asyncio.Queue) -> None:
        while True:
            event = await queue.get()
            try:
                for handler in list(self._handlers):
                    await self._deliver(handler, event)
            finally:
                queue.task_done()

    @staticmethod
    async def _deliver(handler: EventHandler, event: PipelineEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(
                "Event handler %s failed on %s (non-fatal): %s",
                getattr(handler, "__name__", type(handler).__name__), event.type.value, e,
            )


class LoggingSubscriber:
    """Writes every event as a structured log record."""

    def __init__(self, logger_name: str = "keel.events"):
        self._log = structlog.get_logger(logger_name)

    def __call__(self, event: PipelineEvent) -> None:
        level = "warning" if event.type in (EventType.STAGE_ERROR, EventType.PIPELINE_ERROR) else "info"
        getattr(self._log, level)(
            event.type.value,
            run_id=event.run_id,
            stage=event.stage,
            **event.data,
        )
