# -*- coding: utf-8 -*-
import os

from dotenv import load_dotenv

load_dotenv()

# --- Environment / API Keys ---
TELEGRAM_TOKEN = os.getenv("TELEGRAM_TOKEN", "")
OWNER_ID = int(os.getenv("OWNER_ID", "0") or 0)
DUNE_API_KEY = os.getenv("DUNE_API_KEY", "").strip()

# --- API Endpoints ---
DUNE_API_URL = os.getenv("DUNE_API_URL", "https://api.dune.com/api/v1").strip().rstrip("/")

# Dune query (template) ids per command. Empty means the command is disabled.
CABAL_QUERY_ID = os.getenv("CABAL_QUERY_ID", "").strip()
EVM_QUERY_ID = os.getenv("EVM_QUERY_ID", "").strip()
WALLET_PNL_QUERY_ID = os.getenv("WALLET_PNL_QUERY_ID", "").strip()
EVM_WALLET_PNL_QUERY_ID = os.getenv("EVM_WALLET_PNL_QUERY_ID", "").strip()


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, "") or default)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, "") or default)
    except ValueError:
        return default


# --- Configuration ---
CONFIG = {
    "DB_FILE": os.getenv("DB_FILE", "cabal_jobs.db"),
    "HTTP_TIMEOUT": 10.0,

    # Job execution (Dune submit / poll / fetch)
    "POLL_INTERVAL_MS": _env_int("POLL_INTERVAL_MS", 5000),
    "MAX_POLL_ATTEMPTS": _env_int("MAX_POLL_ATTEMPTS", 120),
    # Dune queries on the free tier regularly take several minutes
    "OVERALL_TIMEOUT_MS": _env_int("OVERALL_TIMEOUT_MS", 10 * 60 * 1000),
    "MAX_TRANSIENT_RETRIES": _env_int("MAX_TRANSIENT_RETRIES", 3),
    "INITIAL_BACKOFF_MS": _env_int("INITIAL_BACKOFF_MS", 1000),

    # Request queue
    "INTER_JOB_DELAY_SECONDS": _env_float("INTER_JOB_DELAY_SECONDS", 2.0),
    "DUNE_RATE_PER_SECOND": _env_int("DUNE_RATE_PER_SECOND", 2),

    # Identical lookups within this window reuse the last result. 0 disables.
    "RESULT_CACHE_TTL_SECONDS": _env_int("RESULT_CACHE_TTL_SECONDS", 300),
    "RESULT_CACHE_SIZE": 100,

    # Command Settings
    "MAX_ADDRESSES": 5,
    "DEFAULT_EVM_CHAIN": "ethereum",
    "HISTORY_LIMIT": 5,

    # Telegram HTTP client tuning
    "TELEGRAM_POOL_SIZE": 20,
    "TELEGRAM_POOL_TIMEOUT": 30.0,
    "TELEGRAM_CONNECT_TIMEOUT": 20.0,
    "TELEGRAM_READ_TIMEOUT": 30.0,
}
