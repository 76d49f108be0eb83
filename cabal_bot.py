#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# Cabal Bot - Dune lookups for token and wallet addresses over Telegram.

import logging
import sys
from typing import List, Optional

import httpx
from cachetools import TTLCache
from telegram import Update
from telegram.constants import ChatAction, ParseMode
from telegram.ext import (Application, CommandHandler, ContextTypes,
                          MessageHandler, filters)
from telegram.request import HTTPXRequest

from config import (CABAL_QUERY_ID, CONFIG, DUNE_API_KEY, DUNE_API_URL,
                    EVM_QUERY_ID, EVM_WALLET_PNL_QUERY_ID, TELEGRAM_TOKEN,
                    WALLET_PNL_QUERY_ID)
from cabal_helpers.api import JobClient
from cabal_helpers.db import (get_job_counts, get_recent_jobs,
                              record_job_outcome, setup_database)
from cabal_helpers.jobs import (JobConfig, JobError, JobRequest, QueryKind,
                                ResultRow, build_parameters)
from cabal_helpers.reports import (KIND_TITLES, build_empty_text,
                                   build_error_text, build_summary_line,
                                   build_wallet_pnl_text, csv_filename,
                                   rows_to_csv, split_message)
from cabal_helpers.request_queue import RequestQueue
from cabal_helpers.utils import (HTTP_LIMITER, OUTBOX, _esc, _notify_owner,
                                 _short, is_valid_evm_address,
                                 is_valid_solana_address, split_addresses)

# --- Logging ---
LOG_FILE = "cabal_bot.log"
try:
    from logging.handlers import TimedRotatingFileHandler
    handlers = [TimedRotatingFileHandler(LOG_FILE, when='midnight', backupCount=7, encoding="utf-8"), logging.StreamHandler()]
except OSError:
    handlers = [logging.StreamHandler()]
logging.basicConfig(level=logging.INFO, format="[%(asctime)s] %(levelname)s: %(message)s", handlers=handlers)
log = logging.getLogger("cabal_bot")
logging.getLogger("telegram").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)

TEMPLATES = {
    QueryKind.CABAL: CABAL_QUERY_ID,
    QueryKind.EVM_CABAL: EVM_QUERY_ID,
    QueryKind.WALLET_PNL: WALLET_PNL_QUERY_ID,
    QueryKind.EVM_WALLET_PNL: EVM_WALLET_PNL_QUERY_ID,
}

PROMPTS = {
    QueryKind.CABAL: "Please enter 1-{n} Solana token addresses, separated by spaces:",
    QueryKind.EVM_CABAL: "Please enter 1-{n} EVM token addresses, separated by spaces:",
    QueryKind.WALLET_PNL: "Please enter the Solana wallet address:",
    QueryKind.EVM_WALLET_PNL: "Please enter the EVM wallet address, optionally followed by the chain (default {chain}):",
}

AWAITING_KEY = "awaiting_kind"

# ======================================================================================
# Input validation
# ======================================================================================

def parse_job_input(kind: QueryKind, tokens: List[str], request_id=None) -> JobRequest:
    """Validate raw user tokens for ``kind``. Raises ValueError with a user-facing message."""
    max_n = int(CONFIG.get("MAX_ADDRESSES", 5))
    is_valid = is_valid_evm_address if kind.is_evm else is_valid_solana_address
    chain_label = "EVM" if kind.is_evm else "Solana"

    if kind.is_wallet_lookup:
        if not tokens:
            raise ValueError(f"Please provide a {chain_label} wallet address.")
        wallet, rest = tokens[0], tokens[1:]
        if not is_valid(wallet):
            raise ValueError(f"That doesn't look like a valid {chain_label} wallet address.")
        blockchain = None
        if kind is QueryKind.EVM_WALLET_PNL:
            blockchain = (rest[0] if rest else CONFIG.get("DEFAULT_EVM_CHAIN", "ethereum")).lower()
            rest = rest[1:]
        if rest:
            raise ValueError("Please provide exactly one wallet address.")
        return JobRequest(id=request_id, kind=kind, parameters=build_parameters(kind, [wallet], blockchain))

    if not 1 <= len(tokens) <= max_n:
        raise ValueError(f"Please enter between 1 and {max_n} token addresses.")
    bad = [t for t in tokens if not is_valid(t)]
    if bad:
        raise ValueError(f"Invalid {chain_label} address: {_short(bad[0])}")
    return JobRequest(id=request_id, kind=kind, parameters=build_parameters(kind, tokens))

# ======================================================================================
# Delivery
# ======================================================================================

async def _send_text(bot, chat_id: int, text: str, **kwargs) -> None:
    for chunk in split_message(text):
        await OUTBOX.send_text(bot, chat_id, chunk, **kwargs)

def make_delivery(app: Application):
    async def deliver(request: JobRequest, rows: Optional[List[ResultRow]], error: Optional[JobError]) -> None:
        await record_job_outcome(request, rows, error)
        bot = app.bot
        chat_id = request.id
        if error is not None:
            log.info(f"Delivering {error.kind.value} to {chat_id} for {request.kind.value}")
            await OUTBOX.send_text(bot, chat_id, build_error_text(error))
            return
        if not rows:
            await OUTBOX.send_text(bot, chat_id, build_empty_text(request.kind))
            return
        if request.kind.is_wallet_lookup:
            await _send_text(bot, chat_id, build_wallet_pnl_text(rows, request.kind),
                             parse_mode=ParseMode.HTML, disable_web_page_preview=True)
            return
        await OUTBOX.send_document(
            bot, chat_id, rows_to_csv(rows), csv_filename(request.kind),
            caption=build_summary_line(request.kind, request.parameters, len(rows)),
        )
    return deliver

# ======================================================================================
# Telegram Handlers
# ======================================================================================

def _queue(c: ContextTypes.DEFAULT_TYPE) -> RequestQueue:
    return c.application.bot_data["queue"]

async def safe_reply_text(u: Update, text: str, **kwargs):
    return await OUTBOX.send_text(u.get_bot(), u.effective_chat.id, text, **kwargs)

async def _submit(u: Update, c: ContextTypes.DEFAULT_TYPE, kind: QueryKind, tokens: List[str]) -> None:
    try:
        request = parse_job_input(kind, tokens, u.effective_chat.id)
    except ValueError as e:
        await safe_reply_text(u, str(e))
        return
    place = _queue(c).enqueue(request)
    ahead = f" You are #{place} in line." if place > 1 else ""
    await safe_reply_text(
        u, f"Processing your {KIND_TITLES[kind]} request. This may take a few minutes, please be patient...{ahead}"
    )
    try:
        await u.effective_chat.send_action(action=ChatAction.TYPING)
    except Exception:
        pass

def _make_command(kind: QueryKind):
    async def handler(u: Update, c: ContextTypes.DEFAULT_TYPE):
        if not TEMPLATES.get(kind):
            return await safe_reply_text(u, f"/{kind.value} is not configured on this bot.")
        if c.args:
            return await _submit(u, c, kind, split_addresses(" ".join(c.args)))
        # No inline args: the next plain message from this chat carries the addresses.
        c.chat_data[AWAITING_KEY] = kind
        await safe_reply_text(u, PROMPTS[kind].format(n=CONFIG.get("MAX_ADDRESSES", 5),
                                                      chain=CONFIG.get("DEFAULT_EVM_CHAIN", "ethereum")))
    handler.__name__ = f"cmd_{kind.value}"
    return handler

async def on_text(u: Update, c: ContextTypes.DEFAULT_TYPE):
    kind = c.chat_data.pop(AWAITING_KEY, None)
    if kind is None:
        return
    text = (getattr(u.effective_message, "text", "") or "").strip()
    await _submit(u, c, kind, split_addresses(text))

async def start(u: Update, c: ContextTypes.DEFAULT_TYPE):
    await safe_reply_text(
        u,
        "👋 Send me addresses and I'll run them through Dune.\n"
        "/cabal <token...> - Solana token cabal lookup (CSV)\n"
        "/evmcabal <token...> - EVM token cabal lookup (CSV)\n"
        "/walletpnl <wallet> - Solana wallet PnL\n"
        "/evmwalletpnl <wallet> [chain] - EVM wallet PnL\n"
        "/queue, /cancel, /history",
    )

async def ping(u: Update, c: ContextTypes.DEFAULT_TYPE):
    await safe_reply_text(u, "PONG 🟢")

async def queue_status(u: Update, c: ContextTypes.DEFAULT_TYPE):
    q = _queue(c)
    pos = q.position(u.effective_chat.id)
    mine = "running now" if pos == 0 else (f"#{pos} in line" if pos else "nothing queued")
    counts = await get_job_counts()
    lines = [
        "<b>🩺 Queue Status</b>",
        f" - State: {q.state.value}",
        f" - Waiting: {q.pending}",
        f" - Your request: {mine}",
        f" - Processed this session: {q.processed} ({q.failed} failed)",
        f" - All-time: {counts.get('completed', 0)} completed, {counts.get('empty', 0)} empty, {counts.get('failed', 0)} failed",
    ]
    await safe_reply_text(u, "\n".join(lines), parse_mode=ParseMode.HTML)

async def cancel(u: Update, c: ContextTypes.DEFAULT_TYPE):
    c.chat_data.pop(AWAITING_KEY, None)
    hit = await _queue(c).cancel(u.effective_chat.id)
    if not hit:
        await safe_reply_text(u, "Nothing to cancel.")

async def history(u: Update, c: ContextTypes.DEFAULT_TYPE):
    jobs = await get_recent_jobs(u.effective_chat.id, int(CONFIG.get("HISTORY_LIMIT", 5)))
    if not jobs:
        return await safe_reply_text(u, "No lookups yet.")
    lines = ["<b>Recent lookups</b>"]
    for j in jobs:
        title = KIND_TITLES.get(QueryKind(j["kind"]), j["kind"])
        addrs = ", ".join(_short(v) for v in j["parameters"].values())
        outcome = j["error_kind"] if j["status"] == "failed" else f"{j['row_count']} row(s)"
        lines.append(f" - {_esc(j['finished_at'])} {_esc(title)} [{_esc(addrs)}]: {_esc(outcome)}")
    await safe_reply_text(u, "\n".join(lines), parse_mode=ParseMode.HTML)

async def post_init(app: Application) -> None:
    """Creates the shared HTTP client, job client and request queue."""
    await setup_database()
    job_config = JobConfig.from_config(CONFIG)
    http = httpx.AsyncClient(http2=True)
    rate = max(1, int(CONFIG.get("DUNE_RATE_PER_SECOND", 2)))
    HTTP_LIMITER.configure("dune", rate)
    ttl = int(CONFIG.get("RESULT_CACHE_TTL_SECONDS", 0) or 0)
    cache = TTLCache(maxsize=int(CONFIG.get("RESULT_CACHE_SIZE", 100)), ttl=ttl) if ttl > 0 else None

    client = JobClient(
        http, DUNE_API_KEY, TEMPLATES,
        base_url=DUNE_API_URL, config=job_config, limiter=HTTP_LIMITER, cache=cache,
    )
    app.bot_data["http"] = http
    app.bot_data["queue"] = RequestQueue(
        client, make_delivery(app), inter_job_delay=float(CONFIG.get("INTER_JOB_DELAY_SECONDS", 0) or 0),
    )
    enabled = [k.value for k, v in TEMPLATES.items() if v]
    log.info(f"✅ Job client ready: {', '.join(enabled) or 'no queries configured'} "
             f"(poll {job_config.poll_interval_ms}ms x {job_config.max_poll_attempts}, "
             f"timeout {job_config.overall_timeout_ms}ms)")
    if not DUNE_API_KEY:
        log.warning("DUNE_API_KEY is missing. Every lookup will be rejected.")
        await _notify_owner(app.bot, "<b>Setup required:</b> DUNE_API_KEY is not set.")

async def post_shutdown(app: Application) -> None:
    q: Optional[RequestQueue] = app.bot_data.get("queue")
    if q is not None and q.pending:
        log.warning(f"Shutting down with {q.pending} request(s) still queued.")
    http: Optional[httpx.AsyncClient] = app.bot_data.get("http")
    if http is not None:
        await http.aclose()

def main() -> None:
    """Configures and runs the Telegram bot."""
    if not TELEGRAM_TOKEN:
        log.critical("FATAL: TELEGRAM_TOKEN not set."); sys.exit(1)

    log.info("✅ Cabal Bot is starting up...")
    app = (
        Application.builder()
        .token(TELEGRAM_TOKEN)
        .request(
            HTTPXRequest(
                connection_pool_size=int(CONFIG.get("TELEGRAM_POOL_SIZE", 20) or 20),
                pool_timeout=float(CONFIG.get("TELEGRAM_POOL_TIMEOUT", 30.0) or 30.0),
                connect_timeout=float(CONFIG.get("TELEGRAM_CONNECT_TIMEOUT", 20.0) or 20.0),
                read_timeout=float(CONFIG.get("TELEGRAM_READ_TIMEOUT", 30.0) or 30.0),
                write_timeout=float(CONFIG.get("TELEGRAM_READ_TIMEOUT", 30.0) or 30.0),
            )
        )
        .post_init(post_init)
        .post_shutdown(post_shutdown)
        .build()
    )

    handlers = [CommandHandler(cmd, func) for cmd, func in [
        ("start", start),
        ("help", start),
        ("ping", ping),
        ("queue", queue_status),
        ("cancel", cancel),
        ("history", history),
    ]]
    handlers += [CommandHandler(kind.value, _make_command(kind)) for kind in QueryKind]
    handlers.append(MessageHandler(filters.TEXT & ~filters.COMMAND, on_text))
    app.add_handlers(handlers)

    app.run_polling(drop_pending_updates=True, timeout=30, poll_interval=0.5)

if __name__ == "__main__":
    main()
