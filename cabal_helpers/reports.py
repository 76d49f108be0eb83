# -*- coding: utf-8 -*-
import csv
import io
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from cabal_helpers.jobs import JobError, JobErrorKind, QueryKind, ResultRow, row_columns
from cabal_helpers.utils import _esc

TELEGRAM_TEXT_LIMIT = 4096

_CURRENCY_COLS = re.compile(r"(pnl|usd|profit|volume|value|cost|revenue)", re.I)
_PERCENT_COLS = re.compile(r"(roi|pct|percent|rate)", re.I)

KIND_TITLES = {
    QueryKind.CABAL: "Cabal",
    QueryKind.EVM_CABAL: "EVM Cabal",
    QueryKind.WALLET_PNL: "Wallet PnL",
    QueryKind.EVM_WALLET_PNL: "EVM Wallet PnL",
}

ERROR_TEXTS = {
    JobErrorKind.REMOTE_REJECTED: "Dune rejected the query{status}. Check the addresses and try again.",
    JobErrorKind.REMOTE_FAILURE: "The Dune query failed: {detail}",
    JobErrorKind.TIMEOUT: "The Dune query took too long and was abandoned. Please try again later.",
    JobErrorKind.MAX_RETRIES_EXCEEDED: "Dune did not finish the query in time. Please try again later.",
    JobErrorKind.TRANSIENT_NETWORK: "Couldn't reach Dune. Please try again later.",
    JobErrorKind.CANCELLED: "Request cancelled.",
}


def rows_to_csv(rows: List[ResultRow]) -> bytes:
    """Serialize rows as CSV. Header is the union of row keys in first-seen order."""
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=row_columns(rows), restval="", extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        writer.writerow({k: ("" if v is None else v) for k, v in row.items()})
    return buf.getvalue().encode("utf-8")

def csv_filename(kind: QueryKind, now: Optional[datetime] = None) -> str:
    ts = (now or datetime.now(timezone.utc)).strftime("%Y%m%d_%H%M%S")
    return f"{kind.value}_{ts}.csv"


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)

def format_value(column: str, value: Any) -> str:
    if value is None:
        return "n/a"
    if _is_number(value):
        if _PERCENT_COLS.search(column):
            return f"{value:,.2f}%"
        if _CURRENCY_COLS.search(column):
            sign = "-" if value < 0 else ""
            return f"{sign}${abs(value):,.2f}"
        if isinstance(value, float):
            return f"{value:,.4f}".rstrip("0").rstrip(".")
        return f"{value:,}"
    return str(value)

def _label(column: str) -> str:
    return column.replace("_", " ").strip().title()


def build_wallet_pnl_text(rows: List[ResultRow], kind: QueryKind = QueryKind.WALLET_PNL) -> str:
    lines = [f"<b>📊 {_esc(KIND_TITLES.get(kind, kind.value))}</b>"]
    for i, row in enumerate(rows, start=1):
        lines.append("")
        if len(rows) > 1:
            lines.append(f"<b>#{i}</b>")
        for col, val in row.items():
            text = format_value(col, val)
            if isinstance(val, str) and (val.startswith("0x") or len(val) >= 32):
                text = f"<code>{_esc(text)}</code>"
            else:
                text = _esc(text)
            lines.append(f"<b>{_esc(_label(col))}:</b> {text}")
    return "\n".join(lines)

def build_empty_text(kind: QueryKind) -> str:
    return f"No results found for your {KIND_TITLES.get(kind, kind.value)} lookup."

def build_error_text(error: JobError) -> str:
    template = ERROR_TEXTS.get(error.kind, "Something went wrong: {detail}")
    status = f" (HTTP {error.status_code})" if error.status_code is not None else ""
    return template.format(status=status, detail=error.detail or error.kind.value)

def build_summary_line(kind: QueryKind, parameters: Dict[str, str], row_count: int) -> str:
    addrs = ", ".join(parameters.values())
    return f"{KIND_TITLES.get(kind, kind.value)} results for {addrs}: {row_count} row(s)"


def split_message(text: str, limit: int = TELEGRAM_TEXT_LIMIT) -> List[str]:
    """Chunk text on line boundaries so each piece fits one Telegram message."""
    chunks: List[str] = []
    current = ""
    for line in text.split("\n"):
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]
        candidate = f"{current}\n{line}" if current else line
        if len(candidate) > limit:
            chunks.append(current)
            current = line
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks
