"""Tests for the single-flight request queue."""
import asyncio
from typing import Any, List, Optional, Tuple
from unittest.mock import AsyncMock

import pytest

from cabal_helpers.jobs import JobError, JobErrorKind, JobRequest, QueryKind
from cabal_helpers.request_queue import QueueState, RequestQueue


def _req(rid: Any, token: str) -> JobRequest:
    return JobRequest(id=rid, kind=QueryKind.CABAL, parameters={"Token_1": token})


class FakeJobClient:
    """Records invocations and fails loudly if two ever overlap."""

    def __init__(self, fail_on=(), crash_on=(), delay: float = 0.01) -> None:
        self.fail_on = set(fail_on)
        self.crash_on = set(crash_on)
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self.calls: List[str] = []
        self.started = asyncio.Event()
        self.block_on: Optional[str] = None

    async def execute(self, kind, parameters, config=None, *, cancel_event=None):
        token = parameters["Token_1"]
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        assert self.active == 1, "two executions overlapped"
        self.calls.append(token)
        self.started.set()
        try:
            if token == self.block_on:
                await cancel_event.wait()
                raise JobError(JobErrorKind.CANCELLED, "cancelled before completion")
            await asyncio.sleep(self.delay)
            if token in self.fail_on:
                raise JobError(JobErrorKind.REMOTE_FAILURE, f"{token} failed")
            if token in self.crash_on:
                raise RuntimeError(f"{token} blew up")
            return [{"token": token}]
        finally:
            self.active -= 1


class Recorder:
    def __init__(self) -> None:
        self.deliveries: List[Tuple[Any, str, Optional[list], Optional[JobError]]] = []

    async def __call__(self, request, rows, error) -> None:
        self.deliveries.append((request.id, request.parameters["Token_1"], rows, error))

    @property
    def tokens(self) -> List[str]:
        return [d[1] for d in self.deliveries]


@pytest.mark.asyncio
async def test_enqueue_returns_immediately_and_drains():
    client, rec = FakeJobClient(), Recorder()
    q = RequestQueue(client, rec)

    place = q.enqueue(_req(1, "A"))

    assert place == 1
    assert q.state is QueueState.DRAINING
    assert rec.deliveries == []

    await q.join()

    assert q.state is QueueState.IDLE
    assert rec.deliveries == [(1, "A", [{"token": "A"}], None)]


@pytest.mark.asyncio
async def test_failure_does_not_stop_queue_and_order_is_kept():
    client, rec = FakeJobClient(fail_on={"B"}), Recorder()
    q = RequestQueue(client, rec)

    for token in ("A", "B", "C"):
        q.enqueue(_req(token.lower(), token))
    await q.join()

    assert rec.tokens == ["A", "B", "C"]
    assert rec.deliveries[0][2] == [{"token": "A"}]
    b_error = rec.deliveries[1][3]
    assert rec.deliveries[1][2] is None
    assert isinstance(b_error, JobError) and b_error.kind is JobErrorKind.REMOTE_FAILURE
    assert rec.deliveries[2][2] == [{"token": "C"}]
    assert client.max_active == 1
    assert (q.processed, q.failed) == (3, 1)


@pytest.mark.asyncio
async def test_unexpected_exception_is_delivered_as_error():
    client, rec = FakeJobClient(crash_on={"A"}), Recorder()
    q = RequestQueue(client, rec)

    q.enqueue(_req(1, "A"))
    q.enqueue(_req(1, "B"))
    await q.join()

    assert rec.tokens == ["A", "B"]
    assert rec.deliveries[0][3].kind is JobErrorKind.REMOTE_FAILURE
    assert "blew up" in rec.deliveries[0][3].detail
    assert rec.deliveries[1][3] is None


@pytest.mark.asyncio
async def test_enqueue_while_draining_does_not_start_second_drain():
    client, rec = FakeJobClient(delay=0.02), Recorder()
    q = RequestQueue(client, rec)

    q.enqueue(_req(1, "A"))
    await client.started.wait()
    place = q.enqueue(_req(2, "B"))

    assert place == 2
    assert q.position(1) == 0
    assert q.position(2) == 1
    assert q.position(3) is None
    await q.join()
    assert rec.tokens == ["A", "B"]
    assert client.max_active == 1


@pytest.mark.asyncio
async def test_concurrent_producers_lose_nothing_and_keep_their_order():
    client, rec = FakeJobClient(delay=0.001), Recorder()
    q = RequestQueue(client, rec)

    async def producer(name: str) -> None:
        for i in range(5):
            q.enqueue(_req(name, f"{name}{i}"))
            await asyncio.sleep(0)

    await asyncio.gather(*(producer(p) for p in ("p", "q", "r")))
    await q.join()

    assert len(rec.deliveries) == 15
    for name in ("p", "q", "r"):
        mine = [t for t in rec.tokens if t.startswith(name)]
        assert mine == [f"{name}{i}" for i in range(5)]
    assert client.max_active == 1


@pytest.mark.asyncio
async def test_restarts_after_going_idle():
    client, rec = FakeJobClient(), Recorder()
    q = RequestQueue(client, rec)

    q.enqueue(_req(1, "A"))
    await q.join()
    assert q.state is QueueState.IDLE

    q.enqueue(_req(1, "B"))
    assert q.state is QueueState.DRAINING
    await q.join()
    assert rec.tokens == ["A", "B"]


@pytest.mark.asyncio
async def test_inter_job_delay_between_jobs_only():
    client, rec = FakeJobClient(delay=0), Recorder()
    sleep = AsyncMock()
    q = RequestQueue(client, rec, inter_job_delay=2.5, sleep=sleep, clock=lambda: 0.0)

    for token in ("A", "B", "C"):
        q.enqueue(_req(1, token))
    await q.join()

    assert rec.tokens == ["A", "B", "C"]
    assert sleep.await_count == 2
    sleep.assert_awaited_with(2.5)


@pytest.mark.asyncio
async def test_inter_job_delay_carries_over_idle_gap(clock):
    client, rec = FakeJobClient(delay=0), Recorder()
    q = RequestQueue(client, rec, inter_job_delay=2.5, sleep=clock.sleep, clock=clock)

    q.enqueue(_req(1, "A"))
    await q.join()
    clock.now += 1.0
    q.enqueue(_req(1, "B"))
    await q.join()

    # B arrived after the queue went idle and still waits out the rest of the delay.
    assert clock.sleeps == [1.5]

    clock.now += 10.0
    q.enqueue(_req(1, "C"))
    await q.join()

    assert clock.sleeps == [1.5]
    assert rec.tokens == ["A", "B", "C"]


def test_enqueue_without_running_loop_leaves_queue_idle():
    q = RequestQueue(FakeJobClient(), Recorder())

    with pytest.raises(RuntimeError):
        q.enqueue(_req(1, "A"))

    assert q.state is QueueState.IDLE
    assert q.pending == 0


@pytest.mark.asyncio
async def test_delivery_failure_is_contained():
    client = FakeJobClient()
    seen = []

    async def deliver(request, rows, error):
        seen.append(request.parameters["Token_1"])
        if request.parameters["Token_1"] == "A":
            raise RuntimeError("telegram down")

    q = RequestQueue(client, deliver)
    q.enqueue(_req(1, "A"))
    q.enqueue(_req(1, "B"))
    await q.join()

    assert seen == ["A", "B"]
    assert q.state is QueueState.IDLE


@pytest.mark.asyncio
async def test_cancel_drops_pending_and_flags_running():
    client, rec = FakeJobClient(), Recorder()
    client.block_on = "A"
    q = RequestQueue(client, rec)

    q.enqueue(_req("chat1", "A"))
    q.enqueue(_req("chat2", "B"))
    q.enqueue(_req("chat1", "C"))
    await client.started.wait()

    hit = await q.cancel("chat1")
    await q.join()

    assert hit == 2
    assert client.calls == ["A", "B"]
    assert rec.tokens == ["C", "A", "B"]
    assert rec.deliveries[0][3].kind is JobErrorKind.CANCELLED
    assert rec.deliveries[1][3].kind is JobErrorKind.CANCELLED
    assert rec.deliveries[2][2] == [{"token": "B"}]


@pytest.mark.asyncio
async def test_cancel_unknown_id_is_noop():
    client, rec = FakeJobClient(), Recorder()
    q = RequestQueue(client, rec)

    assert await q.cancel("nobody") == 0
    assert rec.deliveries == []


@pytest.mark.asyncio
async def test_queue_with_real_job_client_delivers_once(job_client, dune):
    rows = [{"wallet": "abc", "pnl_usd": 10.0}]
    dune.set_rows(rows)
    rec = Recorder()
    q = RequestQueue(job_client, rec)

    q.enqueue(_req(7, "So11111111111111111111111111111111111111112"))
    await q.join()

    assert len(rec.deliveries) == 1
    assert rec.deliveries[0][2] == rows
    assert rec.deliveries[0][3] is None
