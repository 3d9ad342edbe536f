"""Sliding-window admission control for embedding provider calls.

Limits enforced per window (defaults from docindex.config.settings):
- requests_per_window: number of provider calls
- tokens_per_window: sum of input tokens across those calls

Usage:
    limiter = SlidingWindowRateLimiter(requests_per_window=300, tokens_per_window=1_000_000)

    waited = await limiter.admit(cost=batch_tokens)   # blocks until admitted
    limiter.try_admit(cost=batch_tokens)              # raises RateLimitExceeded instead
    limiter.update_from_headers(response.headers)     # tighten from provider feedback

Waiting callers are served first-come first-served. A single request whose
cost exceeds the whole token window is admitted alone into an empty window
so it can never starve.
"""
import asyncio
import logging
import re
from collections import deque
from typing import Any, Deque, Dict, Mapping, Optional, Tuple

from docindex.clock import Clock, SystemClock
from docindex.errors import RateLimitExceeded

logger = logging.getLogger(__name__)

_EPS = 1e-9
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")


def parse_reset(value: Optional[str]) -> Optional[float]:
    """Parse a provider reset duration into seconds.

    Accepts OpenAI-style compound durations ("6m0s", "1.5s", "20ms", "1h2m")
    and plain numbers of seconds ("12", "0.5").

    Returns:
        Optional[float]: Seconds, or None if the value is missing or unparseable.
    """
    if value is None:
        return None
    value = str(value).strip().lower()
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    total = 0.0
    matched = 0
    for m in _DURATION_PART.finditer(value):
        amount, unit = float(m.group(1)), m.group(2)
        total += {"ms": amount / 1000.0, "s": amount, "m": amount * 60.0, "h": amount * 3600.0}[unit]
        matched += len(m.group(0))
    if matched != len(value):
        return None
    return total


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


class SlidingWindowRateLimiter:
    """Requests-per-window and tokens-per-window limiter over a sliding window.

    Each admission is recorded as (timestamp, tokens); entries older than the
    window no longer count. A request is delayed until enough entries expire
    for both limits to hold after adding it.
    """

    def __init__(
        self,
        requests_per_window: Optional[int] = None,
        tokens_per_window: Optional[int] = None,
        window_seconds: float = 60.0,
        clock: Optional[Clock] = None,
        name: str = "embeddings",
    ):
        self.requests_per_window = requests_per_window or None
        self.tokens_per_window = tokens_per_window or None
        self.window_seconds = float(window_seconds)
        self.clock = clock or SystemClock()
        self.name = name
        self._entries: Deque[Tuple[float, int]] = deque()
        self._tokens_in_window = 0
        self._lock = asyncio.Lock()
        # Provider-reported budgets: (remaining, reset_at)
        self._header_requests: Optional[Tuple[int, float]] = None
        self._header_tokens: Optional[Tuple[int, float]] = None

    # --- Window bookkeeping ---------------------------------------------------

    def _prune(self, now: float) -> None:
        while self._entries and self._entries[0][0] + self.window_seconds <= now + _EPS:
            _, tokens = self._entries.popleft()
            self._tokens_in_window -= tokens

    def _expire_header_budgets(self, now: float) -> None:
        if self._header_requests is not None and now + _EPS >= self._header_requests[1]:
            self._header_requests = None
        if self._header_tokens is not None and now + _EPS >= self._header_tokens[1]:
            self._header_tokens = None

    def _delay(self, cost: int, now: float) -> float:
        self._prune(now)
        self._expire_header_budgets(now)
        delay = 0.0

        if self.requests_per_window and len(self._entries) >= self.requests_per_window:
            oldest_needed = self._entries[len(self._entries) - self.requests_per_window]
            delay = max(delay, oldest_needed[0] + self.window_seconds - now)

        if self.tokens_per_window and self._entries:
            excess = self._tokens_in_window + cost - self.tokens_per_window
            if excess > 0:
                freed = 0
                expire_at = self._entries[-1][0]
                for ts, tokens in self._entries:
                    freed += tokens
                    if freed >= excess:
                        expire_at = ts
                        break
                delay = max(delay, expire_at + self.window_seconds - now)

        if self._header_requests is not None and self._header_requests[0] <= 0:
            delay = max(delay, self._header_requests[1] - now)
        if self._header_tokens is not None and self._header_tokens[0] < cost:
            delay = max(delay, self._header_tokens[1] - now)

        return delay if delay > _EPS else 0.0

    def _record(self, cost: int, now: float) -> None:
        self._entries.append((now, cost))
        self._tokens_in_window += cost
        if self._header_requests is not None:
            remaining, reset_at = self._header_requests
            self._header_requests = (remaining - 1, reset_at)
        if self._header_tokens is not None:
            remaining, reset_at = self._header_tokens
            self._header_tokens = (remaining - cost, reset_at)

    # --- Admission ------------------------------------------------------------

    def try_admit(self, cost: int = 0) -> None:
        """Record an admission now or raise.

        Args:
            cost: Token cost of the request.

        Raises:
            RateLimitExceeded: With the time after which admission would succeed.
        """
        cost = max(0, int(cost))
        now = self.clock.now()
        delay = self._delay(cost, now)
        if delay > 0:
            raise RateLimitExceeded(delay, {"limiter": self.name, "cost": cost})
        self._record(cost, now)

    async def admit(self, cost: int = 0) -> float:
        """Wait until the request fits the window, then record it.

        Args:
            cost: Token cost of the request.

        Returns:
            float: Seconds spent waiting.
        """
        waited = 0.0
        async with self._lock:
            while True:
                try:
                    self.try_admit(cost)
                    break
                except RateLimitExceeded as e:
                    logger.debug("Rate limiter %s full, waiting %.3fs (cost=%d)", self.name, e.retry_after, cost)
                    await self.clock.sleep(e.retry_after)
                    waited += e.retry_after
        if waited > 0:
            logger.info("Rate limiter %s delayed request by %.2fs", self.name, waited)
        return waited

    def update_from_headers(self, headers: Optional[Mapping[str, Any]]) -> None:
        """Tighten admission from provider rate-limit headers.

        Reads x-ratelimit-remaining-requests / -tokens and the matching
        x-ratelimit-reset-* durations. Budgets only ever tighten until their
        reported reset time passes.
        """
        if not headers:
            return
        h = {str(k).lower(): v for k, v in headers.items()}
        now = self.clock.now()
        for kind in ("requests", "tokens"):
            remaining = _parse_int(h.get(f"x-ratelimit-remaining-{kind}"))
            reset = parse_reset(h.get(f"x-ratelimit-reset-{kind}"))
            if remaining is None or reset is None:
                continue
            budget = (remaining, now + reset)
            current = self._header_requests if kind == "requests" else self._header_tokens
            if current is not None and current[0] <= remaining and current[1] >= budget[1]:
                continue
            if kind == "requests":
                self._header_requests = budget
            else:
                self._header_tokens = budget
            logger.debug("Rate limiter %s: provider reports %d %s remaining, reset in %.2fs", self.name, remaining, kind, reset)

    def snapshot(self) -> Dict[str, Any]:
        """Current window usage for diagnostics."""
        now = self.clock.now()
        self._prune(now)
        self._expire_header_budgets(now)
        return {
            "name": self.name,
            "window_seconds": self.window_seconds,
            "requests_in_window": len(self._entries),
            "tokens_in_window": self._tokens_in_window,
            "requests_per_window": self.requests_per_window,
            "tokens_per_window": self.tokens_per_window,
            "provider_remaining_requests": self._header_requests[0] if self._header_requests else None,
            "provider_remaining_tokens": self._header_tokens[0] if self._header_tokens else None,
        }
