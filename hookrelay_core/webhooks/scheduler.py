"""Delay queue that resubmits due deliveries as background dispatch tasks."""

import asyncio
import heapq
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import structlog

logger = structlog.get_logger(__name__)

DispatchHandler = Callable[[str], Awaitable[Any]]


class RetryScheduler:
    """
    Background scheduler for outbound deliveries.

    Features:
    - Min-heap keyed by due time (unix seconds)
    - Due items are submitted as tasks; the loop never awaits an HTTP call
    - Bounded concurrency via a semaphore
    - Rescheduling a delivery replaces its previous due time
    """

    def __init__(
        self,
        max_concurrent: int = 50,
        poll_interval: float = 0.5,
        clock: Callable[[], float] = time.time,
    ):
        self.max_concurrent = max_concurrent
        self.poll_interval = poll_interval
        self._clock = clock

        self._heap: List[Tuple[float, int, str]] = []
        self._due: Dict[str, float] = {}
        self._seq = 0

        self._handler: Optional[DispatchHandler] = None
        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._wake: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        """Number of scheduled, not yet submitted deliveries."""
        return len(self._due)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def due_at(self, delivery_id: str) -> Optional[float]:
        return self._due.get(delivery_id)

    async def start(self, handler: DispatchHandler) -> None:
        """Start the scheduler loop."""
        if self._running:
            return
        self._handler = handler
        self._semaphore = asyncio.Semaphore(self.max_concurrent)
        self._wake = asyncio.Event()
        self._running = True
        self._loop_task = asyncio.create_task(self._run_loop())
        logger.info("retry_scheduler_started", max_concurrent=self.max_concurrent)

    async def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Stop the loop and wait for in-flight dispatch tasks."""
        if not self._running:
            return
        self._running = False

        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        if self._tasks:
            done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
            for task in pending:
                task.cancel()

        logger.info("retry_scheduler_stopped", pending=self.pending)

    def schedule(self, delivery_id: str, at: Optional[float] = None) -> None:
        """Schedule ``delivery_id`` for dispatch at unix time ``at`` (default: now)."""
        due = self._clock() if at is None else at
        self._due[delivery_id] = due
        self._seq += 1
        heapq.heappush(self._heap, (due, self._seq, delivery_id))
        if self._wake is not None:
            self._wake.set()

    def unschedule(self, delivery_id: str) -> bool:
        # Heap entry is left in place and skipped when popped
        return self._due.pop(delivery_id, None) is not None

    async def join(self) -> None:
        """Wait until all submitted dispatch tasks have finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _pop_due(self, now: float) -> List[str]:
        ready = []
        while self._heap and self._heap[0][0] <= now:
            due, _, delivery_id = heapq.heappop(self._heap)
            if self._due.get(delivery_id) != due:
                continue  # stale
            del self._due[delivery_id]
            ready.append(delivery_id)
        return ready

    async def _run_loop(self) -> None:
        while self._running:
            self._wake.clear()
            now = self._clock()

            for delivery_id in self._pop_due(now):
                self._submit(delivery_id)

            timeout = self.poll_interval
            if self._heap:
                timeout = min(timeout, max(self._heap[0][0] - now, 0.0))
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

    def _submit(self, delivery_id: str) -> None:
        task = asyncio.create_task(self._run_one(delivery_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_one(self, delivery_id: str) -> None:
        async with self._semaphore:
            try:
                await self._handler(delivery_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("scheduled_dispatch_failed", delivery_id=delivery_id)
