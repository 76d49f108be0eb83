# -*- coding: utf-8 -*-
import asyncio
import json
import logging
import random
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, MutableMapping, Optional

import httpx

from config import CONFIG
from cabal_helpers.jobs import (JobConfig, JobError, JobErrorKind, JobExecution,
                                JobState, QueryKind, ResultRow, TransientError,
                                parameters_key)
from cabal_helpers.utils import HttpRateLimiter

log = logging.getLogger("cabal_bot.api")

DUNE_STATES = {
    "QUERY_STATE_PENDING": JobState.PENDING,
    "QUERY_STATE_EXECUTING": JobState.EXECUTING,
    "QUERY_STATE_COMPLETED": JobState.COMPLETED,
    # Result hit the size cap; the rows that fit are still served.
    "QUERY_STATE_COMPLETED_PARTIAL": JobState.COMPLETED,
    "QUERY_STATE_FAILED": JobState.FAILED,
    "QUERY_STATE_CANCELLED": JobState.FAILED,
    "QUERY_STATE_EXPIRED": JobState.FAILED,
}


class BackoffPolicy:
    """Exponential backoff: ``initial_ms * 2**attempt`` plus optional jitter."""

    def __init__(self, initial_ms: int, max_retries: int, jitter_ms: int = 0) -> None:
        self.initial_ms = max(0, int(initial_ms))
        self.max_retries = max(0, int(max_retries))
        self.jitter_ms = max(0, int(jitter_ms))

    @classmethod
    def from_job_config(cls, cfg: JobConfig) -> "BackoffPolicy":
        return cls(cfg.initial_backoff_ms, cfg.max_transient_retries)

    def delay(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt`` (0-based)."""
        ms = self.initial_ms * (2 ** attempt)
        if self.jitter_ms:
            ms += random.uniform(0, self.jitter_ms)
        return ms / 1000.0

    def can_retry(self, attempt: int) -> bool:
        return attempt < self.max_retries


def parse_state(raw: Optional[str]) -> JobState:
    return DUNE_STATES.get((raw or "").upper(), JobState.SUBMITTED)


def _error_detail(payload: Dict[str, Any]) -> str:
    err = payload.get("error")
    if isinstance(err, dict):
        return str(err.get("message") or err.get("type") or err)
    if err:
        return str(err)
    return str(payload.get("state") or "execution failed")


class JobClient:
    """Runs one parameterized Dune query to completion, failure or timeout.

    Submit, poll and fetch each go through ``_request``, which retries network
    errors and 5xx responses with the injected backoff policy while the overall
    deadline allows. ``clock`` and ``sleep`` are injectable so timing can be
    driven without waiting on the wall clock.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        templates: Mapping[QueryKind, str],
        *,
        base_url: str = "https://api.dune.com/api/v1",
        config: Optional[JobConfig] = None,
        backoff: Optional[BackoffPolicy] = None,
        limiter: Optional[HttpRateLimiter] = None,
        cache: Optional[MutableMapping] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._api_key = api_key
        self._templates = dict(templates)
        self._base_url = base_url.rstrip("/")
        self.config = config or JobConfig()
        self.backoff = backoff
        self._limiter = limiter
        self._cache = cache
        self._clock = clock
        self._sleep = sleep
        self.current: Optional[JobExecution] = None

    def template_for(self, kind: QueryKind) -> str:
        template_id = self._templates.get(kind)
        if not template_id:
            raise JobError(JobErrorKind.REMOTE_REJECTED, f"no Dune query configured for {kind.value}")
        return template_id

    async def execute(self, kind: QueryKind, parameters: Mapping[str, str], config: Optional[JobConfig] = None,
                      *, cancel_event: Optional[asyncio.Event] = None) -> List[ResultRow]:
        cfg = config or self.config
        backoff = self.backoff or BackoffPolicy.from_job_config(cfg)
        template_id = self.template_for(kind)

        cache_key = parameters_key(template_id, parameters)
        if self._cache is not None and (cached := self._cache.get(cache_key)) is not None:
            log.info(f"Result cache hit for {kind.value} {dict(parameters)}")
            return list(cached)

        started = self._clock()
        deadline = started + cfg.overall_timeout_ms / 1000.0

        payload = {"query_parameters": dict(parameters)}
        res = await self._request("POST", f"/query/{template_id}/execute", deadline, backoff, json=payload)
        execution_id = str(res.get("execution_id") or "")
        if not execution_id:
            raise JobError(JobErrorKind.REMOTE_FAILURE, f"submit returned no execution_id: {res}")

        execution = JobExecution(execution_id=execution_id, started_at=started)
        self.current = execution
        log.info(f"Submitted {kind.value} job to query {template_id}: execution {execution_id}")
        try:
            rows = await self._poll(execution, cfg, backoff, deadline, cancel_event)
        except JobError as e:
            e.execution_id = e.execution_id or execution_id
            if e.kind is JobErrorKind.TIMEOUT:
                execution.state = JobState.TIMED_OUT
            elif e.kind is not JobErrorKind.CANCELLED:
                execution.state = JobState.FAILED
            log.warning(f"Execution {execution_id} ended with {e}")
            raise
        finally:
            self.current = None

        if self._cache is not None:
            self._cache[cache_key] = list(rows)
        return rows

    async def _poll(self, execution: JobExecution, cfg: JobConfig, backoff: BackoffPolicy, deadline: float,
                    cancel_event: Optional[asyncio.Event]) -> List[ResultRow]:
        interval = cfg.poll_interval_ms / 1000.0
        eid = execution.execution_id
        for attempt in range(1, cfg.max_poll_attempts + 1):
            await self._check_cancel(execution, cancel_event, deadline)
            if self._clock() >= deadline:
                raise JobError(JobErrorKind.TIMEOUT, f"no result after {cfg.overall_timeout_ms} ms")

            status = await self._request("GET", f"/execution/{eid}/status", deadline, backoff)
            execution.attempts_used = attempt
            state = parse_state(status.get("state"))
            if state is not execution.state:
                log.info(f"Execution {eid}: {execution.state.value} -> {state.value} (poll {attempt})")
                execution.state = state

            if state is JobState.COMPLETED:
                if (status.get("state") or "").upper() == "QUERY_STATE_COMPLETED_PARTIAL":
                    log.warning(f"Execution {eid} completed partially; the result is truncated")
                return await self._fetch_rows(eid, deadline, backoff)
            if state is JobState.FAILED:
                raise JobError(JobErrorKind.REMOTE_FAILURE, _error_detail(status))

            if attempt < cfg.max_poll_attempts:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    raise JobError(JobErrorKind.TIMEOUT, f"no result after {cfg.overall_timeout_ms} ms")
                await self._wait(min(interval, remaining), cancel_event)

        raise JobError(JobErrorKind.MAX_RETRIES_EXCEEDED,
                       f"still {execution.state.value} after {cfg.max_poll_attempts} polls")

    async def _fetch_rows(self, eid: str, deadline: float, backoff: BackoffPolicy) -> List[ResultRow]:
        res = await self._request("GET", f"/execution/{eid}/results", deadline, backoff)
        rows = ((res.get("result") or {}).get("rows")) or []
        log.info(f"Execution {eid} completed with {len(rows)} row(s)")
        return list(rows)

    async def _wait(self, seconds: float, cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is None:
            await self._sleep(seconds)
            return
        # Wake early on cancel; the caller re-checks the flag right after.
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for t in (sleeper, waiter):
                if not t.done():
                    t.cancel()

    async def _check_cancel(self, execution: JobExecution, cancel_event: Optional[asyncio.Event],
                            deadline: float) -> None:
        if cancel_event is None or not cancel_event.is_set():
            return
        eid = execution.execution_id
        log.info(f"Execution {eid} cancelled by caller")
        try:
            await self._request("POST", f"/execution/{eid}/cancel", deadline, BackoffPolicy(0, 0))
        except (JobError, TransientError) as e:
            log.warning(f"Remote cancel for {eid} failed: {e}")
        raise JobError(JobErrorKind.CANCELLED, "cancelled before completion")

    async def _request(self, method: str, path: str, deadline: float, backoff: BackoffPolicy,
                       **kwargs) -> Dict[str, Any]:
        attempt = 0
        while True:
            try:
                return await self._send(method, path, deadline, **kwargs)
            except TransientError as e:
                if not backoff.can_retry(attempt):
                    raise JobError(JobErrorKind.MAX_RETRIES_EXCEEDED,
                                   f"{method} {path} failed after {attempt + 1} attempt(s): {e.detail}",
                                   status_code=e.status_code) from e
                wait = backoff.delay(attempt)
                remaining = deadline - self._clock()
                if wait >= remaining:
                    raise JobError(JobErrorKind.TIMEOUT,
                                   f"{method} {path} kept failing and the time budget ran out: {e.detail}",
                                   status_code=e.status_code) from e
                attempt += 1
                log.warning(f"Transient error on {method} {path}: {e.detail}. "
                            f"Retrying in {wait:.2f}s ({attempt}/{backoff.max_retries})...")
                await self._sleep(wait)

    async def _send(self, method: str, path: str, deadline: float, **kwargs) -> Dict[str, Any]:
        if self._limiter is not None:
            await self._limiter.limit("dune")
        remaining = deadline - self._clock()
        if remaining <= 0:
            raise JobError(JobErrorKind.TIMEOUT, f"{method} {path} not sent: time budget used up")
        timeout = min(float(CONFIG.get("HTTP_TIMEOUT", 10.0)), remaining)
        headers = {"X-Dune-API-Key": self._api_key, "User-Agent": "CabalBot/1.0"}
        try:
            r = await self._client.request(method, self._base_url + path, headers=headers, timeout=timeout, **kwargs)
        except (httpx.RequestError, asyncio.TimeoutError) as e:
            raise TransientError(f"{type(e).__name__}: {e}") from e

        if r.status_code >= 500:
            raise TransientError(f"HTTP {r.status_code}", status_code=r.status_code)
        if r.status_code >= 400:
            raise JobError(JobErrorKind.REMOTE_REJECTED, f"{method} {path} rejected",
                           status_code=r.status_code, body=r.text)
        try:
            data = r.json()
        except json.JSONDecodeError as e:
            raise TransientError(f"invalid JSON from {path}: {e}") from e
        if not isinstance(data, dict):
            raise TransientError(f"unexpected payload from {path}: {type(data).__name__}")
        return data
