import asyncio
import json
from typing import Any, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio

from cabal_helpers.api import JobClient
from cabal_helpers.jobs import JobConfig, QueryKind

BASE_URL = "https://dune.test/api/v1"
API_KEY = "test-key"
TEMPLATES = {
    QueryKind.CABAL: "1001",
    QueryKind.EVM_CABAL: "1002",
    QueryKind.WALLET_PNL: "1003",
    QueryKind.EVM_WALLET_PNL: "1004",
}


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeDune:
    """Scripted Dune API. Each list is consumed front to back; the last entry repeats.

    Entries are either a JSON-able dict (200), an int status code, or an
    exception instance to raise.
    """

    def __init__(self, clock: Optional[FakeClock] = None) -> None:
        self.clock = clock
        self.latency = 0.0
        self.submit: List[Any] = [{"execution_id": "01EXEC", "state": "QUERY_STATE_PENDING"}]
        self.status: List[Any] = [{"state": "QUERY_STATE_COMPLETED"}]
        self.results: List[Any] = [{"result": {"rows": [], "metadata": {"column_names": []}}}]
        self.cancel: List[Any] = [{"success": True}]
        self.calls: List[str] = []
        self.requests: List[httpx.Request] = []
        self.on_status = None

    def set_rows(self, rows: List[Dict[str, Any]]) -> None:
        self.results = [{"result": {"rows": rows, "metadata": {"column_names": list(rows[0]) if rows else []}}}]

    def count(self, name: str) -> int:
        return self.calls.count(name)

    @staticmethod
    def _next(script: List[Any]) -> Any:
        return script.pop(0) if len(script) > 1 else script[0]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.clock is not None and self.latency:
            self.clock.now += self.latency
        path = request.url.path
        if path.endswith("/execute"):
            name, script = "submit", self.submit
        elif path.endswith("/status"):
            name, script = "status", self.status
            if self.on_status is not None:
                self.on_status(self.count("status") + 1)
        elif path.endswith("/results"):
            name, script = "results", self.results
        elif path.endswith("/cancel"):
            name, script = "cancel", self.cancel
        else:
            return httpx.Response(404, json={"error": "not found"})
        self.calls.append(name)
        self.requests.append(request)
        entry = self._next(script)
        if isinstance(entry, Exception):
            raise entry
        if isinstance(entry, int):
            return httpx.Response(entry, text=json.dumps({"error": f"status {entry}"}))
        return httpx.Response(200, json=entry)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def dune(clock) -> FakeDune:
    return FakeDune(clock)


@pytest.fixture
def job_config() -> JobConfig:
    return JobConfig(
        poll_interval_ms=1000,
        max_poll_attempts=10,
        overall_timeout_ms=60_000,
        max_transient_retries=3,
        initial_backoff_ms=100,
    )


@pytest_asyncio.fixture
async def http(dune):
    async with httpx.AsyncClient(transport=httpx.MockTransport(dune)) as client:
        yield client


@pytest.fixture
def job_client(http, clock, job_config) -> JobClient:
    return JobClient(http, API_KEY, TEMPLATES, base_url=BASE_URL, config=job_config,
                     clock=clock, sleep=clock.sleep)
