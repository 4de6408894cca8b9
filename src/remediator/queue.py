"""FIFO buffer of workflow events with a background drain loop.

Events are dispatched strictly one at a time in arrival order. A pass stops
as soon as a dispatched event leaves the session waiting for a human answer;
later events stay queued until the interaction completes and the loop (or
:meth:`MessageQueue.kick`) starts a new pass.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable

from remediator.events import QueuedEvent
from remediator.session import Session

logger = logging.getLogger(__name__)

Dispatcher = Callable[[QueuedEvent], Awaitable[None]]


class MessageQueue:
    def __init__(
        self,
        session: Session,
        dispatch: Dispatcher,
        *,
        interval_seconds: float = 0.1,
    ) -> None:
        self.session = session
        self.dispatch = dispatch
        self.interval_seconds = max(0.001, float(interval_seconds))
        self._events: deque[QueuedEvent] = deque()
        self._draining = False
        self._disposed = False
        self._drain_notified = True
        self._on_drain: Callable[[], None] | None = None
        self._loop_task: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        return len(self._events)

    @property
    def length(self) -> int:
        return len(self._events)

    @property
    def disposed(self) -> bool:
        return self._disposed

    def on_drain(self, callback: Callable[[], None]) -> None:
        self._on_drain = callback

    def enqueue(self, event: QueuedEvent) -> None:
        if self._disposed:
            logger.debug("Dropping %s event %s: queue disposed", event.kind, event.id)
            return
        self._events.append(event)
        self._drain_notified = False
        logger.debug(
            "Event enqueued: %s, id: %s, queue length: %d", event.kind, event.id, len(self._events)
        )

    def start(self) -> None:
        if self._disposed or self._loop_task is not None:
            return
        self._loop_task = asyncio.get_running_loop().create_task(
            self._run_background(), name=f"message-queue-{self.session.id}"
        )

    def _can_drain(self) -> bool:
        return (
            not self._disposed
            and not self._draining
            and not self.session.waiting_for_interaction
            and bool(self._events)
        )

    async def _run_background(self) -> None:
        while not self._disposed:
            await asyncio.sleep(self.interval_seconds)
            if self._can_drain():
                try:
                    await self.drain()
                except Exception:
                    logger.exception("Error in background queue processing")

    def kick(self) -> None:
        """Start a pass on the next loop iteration if one is possible."""
        if not self._can_drain():
            return
        task = asyncio.get_running_loop().create_task(self.drain())
        task.add_done_callback(self._log_kick_failure)

    @staticmethod
    def _log_kick_failure(task: asyncio.Task[None]) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error("Error resuming queue processing", exc_info=task.exception())

    async def drain(self) -> int:
        """Run one drain pass and return the number of events dispatched."""
        if self._draining:
            logger.debug("Already processing queue, skipping")
            return 0
        if self._disposed or not self._events:
            return 0
        if self.session.waiting_for_interaction:
            logger.debug("Waiting for user interaction, skipping queue processing")
            return 0

        logger.info("Starting queue processing, %d events in queue", len(self._events))
        self._draining = True
        delivered = 0
        try:
            while self._events and not self._disposed:
                event = self._events.popleft()
                delivered += 1
                logger.debug(
                    "Processing event: %s, id: %s, remaining in queue: %d",
                    event.kind,
                    event.id,
                    len(self._events),
                )
                try:
                    await self.dispatch(event)
                except Exception:
                    logger.exception("Error processing queued event %s", event.id)
                if self.session.waiting_for_interaction:
                    logger.info(
                        "Event %s requires user interaction, stopping queue processing", event.id
                    )
                    break
            logger.info("Queue processing complete, %d events remaining", len(self._events))
        finally:
            self._draining = False
            self._notify_if_drained()
        return delivered

    def _notify_if_drained(self) -> None:
        if self._events or self._drain_notified or self._on_drain is None:
            return
        self._drain_notified = True
        logger.debug("Queue drained, invoking drain callback")
        try:
            self._on_drain()
        except Exception:
            logger.exception("Error in drain callback")

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._events.clear()
        task, self._loop_task = self._loop_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        logger.debug("Message queue disposed")
