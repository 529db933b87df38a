"""
Feeds navigation events and popup commands through one bounded channel so the
SessionManager sees them strictly one at a time, whatever order the tabs
produce them in.
"""
import asyncio
import contextlib
import logging
from typing import Any, Callable, FrozenSet, Iterable, Set, Tuple

from classifier import classify, is_content_host
from errors import DispatcherNotRunning
from session_manager import SessionManager
from state import (
    ArticleIdentity,
    ClearResult,
    ClearSession,
    ContextClosedEvent,
    ContextClosedResult,
    ContextId,
    ExportSession,
    GetSessionData,
    NavigationEvent,
    NavigationResult,
    ToggleTracking,
    TrackingState,
)

logger = logging.getLogger("wikipath.dispatch")

EVENT_QUEUE_SIZE = 256


class ContextRegistry:
    """Contexts whose most recently loaded page is on a Wikipedia host."""

    def __init__(self) -> None:
        self._open: Set[ContextId] = set()

    def observe(self, context: ContextId, url: str) -> None:
        if is_content_host(url):
            self._open.add(context)
        else:
            self._open.discard(context)

    def seed(self, contexts: Iterable[ContextId]) -> None:
        """Marks contexts as open without a page load, e.g. after a restart."""
        self._open.update(contexts)

    def close(self, context: ContextId) -> None:
        self._open.discard(context)

    def open_contexts(self) -> FrozenSet[ContextId]:
        return frozenset(self._open)


class EventDispatcher:
    """
    Single consumer of the event channel. Each submitted message gets a future
    that resolves to the handler's result or raises the handler's exception.
    """

    def __init__(
        self,
        manager: SessionManager,
        registry: ContextRegistry | None = None,
        classifier: Callable[[str], ArticleIdentity | None] = classify,
        maxsize: int = EVENT_QUEUE_SIZE,
    ) -> None:
        self.manager = manager
        self.registry = registry or ContextRegistry()
        self._classify = classifier
        self._queue: asyncio.Queue[Tuple[Any, asyncio.Future]] = asyncio.Queue(maxsize=maxsize)
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        active = self.manager.get_active()
        if active is not None:
            # Tabs of a session restored from the store are assumed still open.
            self.registry.seed(visit.originating_context for visit in active.visits)
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("Event dispatcher started (queue size %d)", self._queue.maxsize)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            if not future.done():
                future.set_exception(DispatcherNotRunning("Dispatcher stopped before handling the message"))
            self._queue.task_done()
        logger.info("Event dispatcher stopped")

    async def submit(self, message: Any) -> Any:
        """Queues ``message`` (waiting while the channel is full) and returns its result."""
        if not self.running:
            raise DispatcherNotRunning("Event dispatcher is not running")
        future = asyncio.get_running_loop().create_future()
        await self._queue.put((message, future))
        return await future

    async def _run(self) -> None:
        while True:
            message, future = await self._queue.get()
            try:
                if future.cancelled():
                    continue
                try:
                    result = self.handle(message)
                except Exception as exc:
                    logger.warning("Failed to handle %s message: %s", getattr(message, "action", message), exc)
                    if not future.done():
                        future.set_exception(exc)
                else:
                    if not future.done():
                        future.set_result(result)
            finally:
                self._queue.task_done()

    # --- Handlers ---

    def handle(self, message: Any) -> Any:
        """Applies one message to the manager. Every message type is covered."""
        if isinstance(message, NavigationEvent):
            return self._on_navigation(message)
        if isinstance(message, ContextClosedEvent):
            return self._on_context_closed(message)
        if isinstance(message, (GetSessionData, ExportSession)):
            return self.manager.session_data()
        if isinstance(message, ToggleTracking):
            return TrackingState(is_tracking=self.manager.toggle_tracking())
        if isinstance(message, ClearSession):
            self.manager.end()
            return ClearResult(success=True)
        raise TypeError(f"Unsupported message type: {type(message).__name__}")

    def _on_navigation(self, event: NavigationEvent) -> NavigationResult:
        if not event.load_complete:
            return NavigationResult(recorded=False)
        self.registry.observe(event.context, event.url)
        identity = self._classify(event.url)
        if identity is None:
            return NavigationResult(recorded=False)
        visit = self.manager.record_visit(event.context, identity)
        return NavigationResult(recorded=visit is not None, visit=visit)

    def _on_context_closed(self, event: ContextClosedEvent) -> ContextClosedResult:
        self.registry.close(event.context)
        if event.remaining_contexts is not None:
            remaining = event.remaining_contexts
        else:
            remaining = self.registry.open_contexts()
        ended = self.manager.end_if_no_contexts(remaining)
        return ContextClosedResult(session_ended=ended is not None)
