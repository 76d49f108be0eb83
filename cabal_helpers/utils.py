# -*- coding: utf-8 -*-
import asyncio
import html as _html
import random
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from telegram.constants import ParseMode

from config import OWNER_ID

# --------------------------------------------------------------------------------------
# Rate limiting primitives (token buckets) and Telegram outbox gating
# --------------------------------------------------------------------------------------

class TokenBucket:
    """Refills ``rate`` tokens per second up to ``burst``. ``acquire`` takes one, waiting if empty."""

    def __init__(self, rate: float, burst: Optional[float] = None, *,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> None:
        self.rate = max(1e-6, float(rate))
        self.burst = max(1.0, float(burst if burst is not None else rate))
        self.tokens = self.burst
        self._clock = clock
        self._sleep = sleep
        self._last = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        self.tokens = min(self.burst, self.tokens + max(0.0, now - self._last) * self.rate)
        self._last = now

    async def acquire(self) -> float:
        """Returns the seconds spent waiting."""
        async with self._lock:
            self._refill()
            waited = 0.0
            if self.tokens < 1.0:
                waited = (1.0 - self.tokens) / self.rate
                await self._sleep(waited)
                self._refill()
            self.tokens = max(0.0, self.tokens - 1.0)
            return waited


class HttpRateLimiter:
    """Named buckets for outbound APIs. Keys without a bucket are not limited."""

    def __init__(self) -> None:
        self._buckets: Dict[str, TokenBucket] = {}

    def configure(self, key: str, rate_per_second: float, **kwargs) -> TokenBucket:
        self._buckets[key] = TokenBucket(rate_per_second, **kwargs)
        return self._buckets[key]

    async def limit(self, key: str) -> float:
        bucket = self._buckets.get(key)
        return await bucket.acquire() if bucket is not None else 0.0


_RETRY_AFTER_MARKERS = ("Too Many Requests", "RetryAfter", "429")
_NETWORK_FLAP_MARKERS = ("ReadError", "Timeout", "timed out", "Server disconnected", "reset by peer",
                         "RemoteProtocolError", "ConnectError")


class TelegramOutbox:
    """Global + per-chat token buckets for Telegram sends."""

    def __init__(self) -> None:
        # Telegram allows ~30 msgs/sec overall and ~1 msg/sec per chat
        self.global_bucket = TokenBucket(30)
        self.per_chat: Dict[int, TokenBucket] = {}

    def _chat_bucket(self, chat_id: int) -> TokenBucket:
        if chat_id not in self.per_chat:
            self.per_chat[chat_id] = TokenBucket(1)
        return self.per_chat[chat_id]

    async def _send(self, chat_id: int, send):
        await self.global_bucket.acquire()
        await self._chat_bucket(chat_id).acquire()
        for attempt in range(5):
            try:
                return await send()
            except Exception as e:
                msg = str(e)
                if any(s in msg for s in _RETRY_AFTER_MARKERS) and attempt < 4:
                    await asyncio.sleep(1.5 + random.uniform(0, 0.6))
                    continue
                # Network flaps on underlying httpx/httpcore: retry lightly
                if any(s in msg for s in _NETWORK_FLAP_MARKERS) and attempt < 4:
                    await asyncio.sleep(0.8 + 0.4 * attempt + random.uniform(0, 0.3))
                    continue
                raise

    async def send_text(self, bot, chat_id: int, text: str, **kwargs):
        return await self._send(chat_id, lambda: bot.send_message(chat_id=chat_id, text=text, **kwargs))

    async def send_document(self, bot, chat_id: int, document: bytes, filename: str, **kwargs):
        return await self._send(
            chat_id, lambda: bot.send_document(chat_id=chat_id, document=document, filename=filename, **kwargs)
        )


OUTBOX = TelegramOutbox()
HTTP_LIMITER = HttpRateLimiter()


async def _notify_owner(bot, text: str) -> None:
    if not OWNER_ID:
        return
    try:
        await OUTBOX.send_text(bot, OWNER_ID, text, parse_mode=ParseMode.HTML, disable_web_page_preview=True)
    except Exception:
        pass


def is_valid_solana_address(address: str) -> bool:
    return bool(re.fullmatch(r"[1-9A-HJ-NP-Za-km-z]{32,44}", address or ""))

def is_valid_evm_address(address: str) -> bool:
    return bool(re.fullmatch(r"0x[0-9a-fA-F]{40}", address or ""))

def split_addresses(text: str) -> List[str]:
    return [a for a in re.split(r"[,\s]+", (text or "").strip()) if a]

def _esc(v: Any) -> str: return _html.escape(str(v), quote=True)

def _short(addr: Optional[str], head: int = 6, tail: int = 4) -> str:
    s = str(addr or "")
    if len(s) <= head + tail + 1:
        return s
    return f"{s[:head]}…{s[-tail:]}"
