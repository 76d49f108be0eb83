# -*- coding: utf-8 -*-
import asyncio
import logging
import time
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, List, Optional

from cabal_helpers.jobs import JobError, JobErrorKind, JobRequest, ResultRow

log = logging.getLogger("cabal_bot.queue")

# deliver(request, rows, error): exactly one of rows / error is set.
DeliveryCallback = Callable[[JobRequest, Optional[List[ResultRow]], Optional[JobError]], Awaitable[None]]


class QueueState(str, Enum):
    IDLE = "idle"
    DRAINING = "draining"


class RequestQueue:
    """Single-flight FIFO in front of the job client.

    Requests run one at a time in arrival order. Every request reaches the
    delivery callback exactly once, with rows or with a JobError; a failing job
    never stops the ones queued behind it. Must be used from one event loop.
    """

    def __init__(self, client, deliver: DeliveryCallback, *, inter_job_delay: float = 0.0,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self._client = client
        self._deliver = deliver
        self.inter_job_delay = max(0.0, float(inter_job_delay))
        self._sleep = sleep
        self._clock = clock
        self._last_finished: Optional[float] = None
        self._pending: Deque[JobRequest] = deque()
        self._state = QueueState.IDLE
        self._task: Optional[asyncio.Task] = None
        self.current: Optional[JobRequest] = None
        self.processed = 0
        self.failed = 0

    @property
    def state(self) -> QueueState:
        return self._state

    @property
    def pending(self) -> int:
        return len(self._pending)

    def position(self, request_id: Any) -> Optional[int]:
        """1-based place in line for the first request with this id; 0 if it is running."""
        if self.current is not None and self.current.id == request_id:
            return 0
        for i, req in enumerate(self._pending, start=1):
            if req.id == request_id:
                return i
        return None

    def enqueue(self, request: JobRequest) -> int:
        """Append to the tail and start draining if idle. Returns the place in line."""
        loop = asyncio.get_running_loop() if self._state is QueueState.IDLE else None
        self._pending.append(request)
        place = len(self._pending) + (1 if self.current is not None else 0)
        log.info(f"Queued {request.kind.value} request for {request.id} (position {place})")
        if loop is not None:
            self._state = QueueState.DRAINING
            self._task = loop.create_task(self._drain(), name="RequestQueueDrain")
        return place

    async def cancel(self, request_id: Any) -> int:
        """Drop queued requests for ``request_id`` and flag the running one. Returns how many were hit."""
        dropped = [r for r in self._pending if r.id == request_id]
        if dropped:
            self._pending = deque(r for r in self._pending if r.id != request_id)
        hit = len(dropped)
        if self.current is not None and self.current.id == request_id:
            self.current.cancel_event.set()
            hit += 1
        for req in dropped:
            await self._safe_deliver(req, None, JobError(JobErrorKind.CANCELLED, "removed from queue"))
        if hit:
            log.info(f"Cancelled {hit} request(s) for {request_id}")
        return hit

    async def join(self) -> None:
        """Wait until the queue is idle again."""
        while self._task is not None and not self._task.done():
            await asyncio.shield(self._task)

    async def _drain(self) -> None:
        log.info("Request queue draining...")
        try:
            while self._pending:
                await self._pause()
                if not self._pending:
                    break
                await self._run_one(self._pending.popleft())
                self._last_finished = self._clock()
        finally:
            self.current = None
            self._state = QueueState.IDLE
            log.info(f"Request queue idle ({self.processed} processed, {self.failed} failed).")

    async def _pause(self) -> None:
        """Wait out whatever is left of the inter-job delay since the last job finished."""
        if self.inter_job_delay <= 0 or self._last_finished is None:
            return
        wait = self.inter_job_delay - (self._clock() - self._last_finished)
        if wait > 0:
            await self._sleep(wait)

    async def _run_one(self, request: JobRequest) -> None:
        self.current = request
        rows: Optional[List[ResultRow]] = None
        error: Optional[JobError] = None
        try:
            rows = await self._client.execute(request.kind, request.parameters, cancel_event=request.cancel_event)
        except JobError as e:
            error = e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(f"Unexpected error running {request.kind.value} for {request.id}: {e}", exc_info=True)
            error = JobError(JobErrorKind.REMOTE_FAILURE, f"unexpected error: {e}")
        finally:
            self.current = None
        self.processed += 1
        if error is not None:
            self.failed += 1
        await self._safe_deliver(request, rows, error)

    async def _safe_deliver(self, request: JobRequest, rows: Optional[List[ResultRow]],
                            error: Optional[JobError]) -> None:
        try:
            await self._deliver(request, rows, error)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(f"Delivery failed for {request.id}: {e}", exc_info=True)
