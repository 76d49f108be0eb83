# -*- coding: utf-8 -*-
"""Job data model shared by the Dune client, the request queue and the bot."""
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

# One row of a completed query. Column sets differ per query, so rows stay dicts.
ResultRow = Dict[str, Any]


class QueryKind(str, Enum):
    CABAL = "cabal"
    EVM_CABAL = "evmcabal"
    WALLET_PNL = "walletpnl"
    EVM_WALLET_PNL = "evmwalletpnl"

    @property
    def is_wallet_lookup(self) -> bool:
        return self in (QueryKind.WALLET_PNL, QueryKind.EVM_WALLET_PNL)

    @property
    def is_evm(self) -> bool:
        return self in (QueryKind.EVM_CABAL, QueryKind.EVM_WALLET_PNL)


class JobState(str, Enum):
    SUBMITTED = "submitted"
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class JobErrorKind(str, Enum):
    REMOTE_REJECTED = "remote_rejected"
    REMOTE_FAILURE = "remote_failure"
    TIMEOUT = "timeout"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
    TRANSIENT_NETWORK = "transient_network"
    CANCELLED = "cancelled"


class JobError(Exception):
    """Terminal failure of one job. ``kind`` decides how the bot words it."""

    def __init__(self, kind: JobErrorKind, detail: str = "", *, status_code: Optional[int] = None,
                 body: Optional[str] = None, execution_id: Optional[str] = None) -> None:
        self.kind = kind
        self.detail = detail
        self.status_code = status_code
        self.body = body
        self.execution_id = execution_id
        super().__init__(self.__str__())

    def __str__(self) -> str:
        parts = [self.kind.value]
        if self.status_code is not None:
            parts.append(f"HTTP {self.status_code}")
        if self.detail:
            parts.append(self.detail)
        return ": ".join(parts)


class TransientError(Exception):
    """Network error or 5xx. Retried inside JobClient, never delivered."""

    def __init__(self, detail: str, status_code: Optional[int] = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


@dataclass
class JobConfig:
    poll_interval_ms: int = 5000
    max_poll_attempts: int = 120
    overall_timeout_ms: int = 600_000
    max_transient_retries: int = 3
    initial_backoff_ms: int = 1000

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "JobConfig":
        return cls(
            poll_interval_ms=int(cfg.get("POLL_INTERVAL_MS", cls.poll_interval_ms)),
            max_poll_attempts=int(cfg.get("MAX_POLL_ATTEMPTS", cls.max_poll_attempts)),
            overall_timeout_ms=int(cfg.get("OVERALL_TIMEOUT_MS", cls.overall_timeout_ms)),
            max_transient_retries=int(cfg.get("MAX_TRANSIENT_RETRIES", cls.max_transient_retries)),
            initial_backoff_ms=int(cfg.get("INITIAL_BACKOFF_MS", cls.initial_backoff_ms)),
        )


@dataclass
class JobRequest:
    id: Any
    kind: QueryKind
    parameters: Dict[str, str]
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False, compare=False)


@dataclass
class JobExecution:
    execution_id: str
    started_at: float
    state: JobState = JobState.SUBMITTED
    attempts_used: int = 0


def build_parameters(kind: QueryKind, addresses: Sequence[str], blockchain: Optional[str] = None) -> Dict[str, str]:
    """Map validated user input onto the parameter names each Dune query expects."""
    cleaned = [a.strip() for a in addresses if a and a.strip()]
    if not cleaned:
        raise ValueError("at least one address is required")
    if kind.is_wallet_lookup:
        if len(cleaned) != 1:
            raise ValueError("wallet lookups take exactly one address")
        params = {"wallet_address": cleaned[0]}
        if kind is QueryKind.EVM_WALLET_PNL:
            if not blockchain:
                raise ValueError("chain-qualified lookups need a blockchain")
            params["blockchain"] = blockchain.strip().lower()
        return params
    return {f"Token_{i}": a for i, a in enumerate(cleaned, start=1)}


def parameters_key(template_id: str, parameters: Mapping[str, str]) -> tuple:
    return (str(template_id),) + tuple(sorted(parameters.items()))


def row_columns(rows: List[ResultRow]) -> List[str]:
    """Ordered union of column names, in order of first appearance."""
    cols: List[str] = []
    seen = set()
    for row in rows:
        for k in row:
            if k not in seen:
                seen.add(k)
                cols.append(k)
    return cols
