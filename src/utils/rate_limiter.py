"""
Sliding-window rate limiter for external model dispatch.

One limiter instance guards one model, so every caller of that model shares
the same window. Requests and estimated tokens are budgeted independently.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable, Deque, Optional, Tuple

from utils.error_handling import RateLimitExceeded


class SlidingWindowRateLimiter:
    """Thread-safe requests/tokens per window limiter."""

    def __init__(
        self,
        model_id: str,
        requests_per_minute: Optional[int] = None,
        tokens_per_minute: Optional[int] = None,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.model_id = model_id
        self.requests_per_minute = requests_per_minute
        self.tokens_per_minute = tokens_per_minute
        self.window_seconds = window_seconds
        self._clock = clock
        self._window: Deque[Tuple[float, int]] = deque()
        self._tokens_in_window = 0
        self._condition = threading.Condition()

    def acquire(self, tokens: int = 0, block: bool = False, timeout: Optional[float] = None) -> None:
        """
        Reserve one request and ``tokens`` tokens in the current window.

        With ``block`` the caller waits (up to ``timeout``) for the window to
        free up; otherwise an exhausted budget raises immediately.
        """
        if self.tokens_per_minute is not None and tokens > self.tokens_per_minute:
            raise RateLimitExceeded(self.model_id, retry_after=self.window_seconds)

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            while True:
                retry_after = self._admit(tokens)
                if retry_after <= 0:
                    return
                if not block:
                    raise RateLimitExceeded(self.model_id, retry_after=retry_after)
                wait_for = retry_after
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise RateLimitExceeded(self.model_id, retry_after=retry_after)
                    wait_for = min(wait_for, remaining)
                self._condition.wait(timeout=wait_for)

    def _admit(self, tokens: int) -> float:
        """Record the request if it fits; otherwise return seconds until it might."""
        now = self._clock()
        self._evict(now)

        over_requests = (
            self.requests_per_minute is not None
            and len(self._window) + 1 > self.requests_per_minute
        )
        over_tokens = (
            self.tokens_per_minute is not None
            and self._tokens_in_window + tokens > self.tokens_per_minute
        )
        if not over_requests and not over_tokens:
            self._window.append((now, tokens))
            self._tokens_in_window += tokens
            return 0.0

        oldest = self._window[0][0] if self._window else now
        return max(0.001, oldest + self.window_seconds - now)

    def _evict(self, now: float) -> None:
        window_start = now - self.window_seconds
        while self._window and self._window[0][0] <= window_start:
            _, spent = self._window.popleft()
            self._tokens_in_window -= spent

    def usage(self) -> dict:
        """Current window usage for diagnostics."""
        with self._condition:
            self._evict(self._clock())
            return {
                "requests": len(self._window),
                "tokens": self._tokens_in_window,
                "requests_per_minute": self.requests_per_minute,
                "tokens_per_minute": self.tokens_per_minute,
            }

    def reset(self) -> None:
        """Clear the window."""
        with self._condition:
            self._window.clear()
            self._tokens_in_window = 0
            self._condition.notify_all()
