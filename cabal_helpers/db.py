# -*- coding: utf-8 -*-
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import aiosqlite

from config import CONFIG
from cabal_helpers.jobs import JobError, JobRequest

log = logging.getLogger("cabal_bot.db")

# History writes come from the drain task and command handlers; one writer at a time.
DB_WRITE_LOCK = asyncio.Lock()
LOCKED_ATTEMPTS = 4

async def _run(query: str, params: tuple, fetch: bool):
    async with aiosqlite.connect(CONFIG["DB_FILE"], timeout=30.0) as con:
        await con.execute("PRAGMA journal_mode=WAL;")
        async with con.execute(query, params) as cur:
            if fetch:
                return await cur.fetchall()
        await con.commit()
        return None

async def _execute_db(query: str, params: tuple = (), *, fetch: bool = False):
    """Run one statement; writes go through the write lock. Returns fetched rows, or None on error."""
    for attempt in range(1, LOCKED_ATTEMPTS + 1):
        try:
            if fetch:
                return await _run(query, params, True)
            async with DB_WRITE_LOCK:
                return await _run(query, params, False)
        except aiosqlite.OperationalError as e:
            if "locked" in str(e).lower() and attempt < LOCKED_ATTEMPTS:
                log.warning(f"SQLite locked; retrying ({attempt}/{LOCKED_ATTEMPTS}): {query[:48]}...")
                await asyncio.sleep(0.25 * attempt)
                continue
            log.error(f"Database error on query '{query[:50]}...': {e}")
            return None
        except aiosqlite.Error as e:
            log.error(f"Database error on query '{query[:50]}...': {e}")
            return None

async def setup_database():
    await _execute_db("""
        CREATE TABLE IF NOT EXISTS JobLog (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            request_id TEXT NOT NULL,
            kind TEXT NOT NULL,
            parameters_json TEXT,
            status TEXT NOT NULL,
            row_count INTEGER DEFAULT 0,
            error_kind TEXT,
            error_detail TEXT,
            execution_id TEXT,
            finished_at TEXT DEFAULT (CURRENT_TIMESTAMP)
        )
    """)
    await _execute_db("CREATE INDEX IF NOT EXISTS idx_joblog_request ON JobLog(request_id, id)")
    log.info("✅ Database is set up.")

def _outcome_status(rows: Optional[List[Any]], error: Optional[JobError]) -> str:
    if error is not None:
        return "failed"
    return "completed" if rows else "empty"

async def record_job_outcome(request: JobRequest, rows: Optional[List[Any]], error: Optional[JobError]) -> None:
    await _execute_db(
        "INSERT INTO JobLog (request_id, kind, parameters_json, status, row_count, error_kind, error_detail, execution_id) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        (
            str(request.id),
            request.kind.value,
            json.dumps(request.parameters),
            _outcome_status(rows, error),
            len(rows or []),
            error.kind.value if error else None,
            (error.detail or "")[:500] if error else None,
            error.execution_id if error else None,
        ),
    )

async def get_recent_jobs(request_id: Any, limit: int = 5) -> List[Dict[str, Any]]:
    rows = await _execute_db(
        "SELECT kind, parameters_json, status, row_count, error_kind, finished_at FROM JobLog "
        "WHERE request_id = ? ORDER BY id DESC LIMIT ?",
        (str(request_id), int(limit)), fetch=True
    )
    out: List[Dict[str, Any]] = []
    for kind, params_json, status, row_count, error_kind, finished_at in rows or []:
        try:
            params = json.loads(params_json or "{}")
        except json.JSONDecodeError:
            params = {}
        out.append({
            "kind": kind, "parameters": params, "status": status,
            "row_count": row_count, "error_kind": error_kind, "finished_at": finished_at,
        })
    return out

async def get_job_counts() -> Dict[str, int]:
    rows = await _execute_db("SELECT status, COUNT(*) FROM JobLog GROUP BY status", fetch=True)
    return {r[0]: r[1] for r in rows} if rows else {}
