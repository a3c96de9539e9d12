"""
auth/ratelimit.py -- Per-identity rate limiting for sensitive actions.

Built on `limits`, the library underneath slowapi. api/limiter.py throttles
per client address at the HTTP edge; this module throttles per identity
(email, username) inside the core, where the address is unknown or spoofable.

Atomicity:
  check_and_record() is a single `hit()` -- an atomic increment-and-compare on
  the counter for (action, key). MemoryStorage keeps one lock per counter key,
  so unrelated identities never contend with each other; redis:// storage
  gives the same guarantee across processes via INCR.

Actions are configured once at startup:
  limiter.configure(LOGIN, amount=5, window_seconds=600)
  limiter.check_and_record("alice", LOGIN)   # raises RateLimitedError on the 6th call

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import math
import time

from limits import RateLimitItem, RateLimitItemPerSecond
from limits.storage import storage_from_string
from limits.strategies import FixedWindowRateLimiter, MovingWindowRateLimiter

from auth.errors import RateLimitedError

logger = logging.getLogger("strmauth.ratelimit")

# Action names. Code issuance is keyed per purpose, so the purpose value is
# appended: "send_code:activation", "send_code:password_reset".
LOGIN = "login"
SEND_CODE = "send_code"

_STRATEGIES = {
    "fixed-window": FixedWindowRateLimiter,
    "moving-window": MovingWindowRateLimiter,
}


def send_code_action(purpose: str) -> str:
    return f"{SEND_CODE}:{purpose}"


class RateLimiter:
    """Keyed attempt counters with a fixed or moving window per action."""

    def __init__(self, storage_uri: str = "memory://", strategy: str = "fixed-window") -> None:
        if strategy not in _STRATEGIES:
            raise ValueError(f"Unknown rate limit strategy {strategy!r}; expected one of {sorted(_STRATEGIES)}")
        self._storage = storage_from_string(storage_uri)
        self._limiter = _STRATEGIES[strategy](self._storage)
        self._rules: dict[str, RateLimitItem] = {}

    def configure(self, action: str, amount: int, window_seconds: int) -> None:
        """Allow `amount` attempts of `action` per key every `window_seconds`."""
        self._rules[action] = RateLimitItemPerSecond(amount, window_seconds, namespace=action)

    def _rule(self, action: str) -> RateLimitItem:
        try:
            return self._rules[action]
        except KeyError:
            raise KeyError(f"Rate limit action {action!r} is not configured") from None

    def check_and_record(self, key: str, action: str) -> None:
        """Record one attempt; raise RateLimitedError if it exceeds the window's allowance."""
        rule = self._rule(action)
        if self._limiter.hit(rule, key):
            return
        reset_at, _remaining = self._limiter.get_window_stats(rule, key)
        retry_after = max(1, math.ceil(reset_at - time.time()))
        logger.info("Rate limit exceeded for action=%s (retry in %ds)", action, retry_after)
        raise RateLimitedError(
            f"Too many attempts. Retry in {retry_after} seconds.",
            retry_after=retry_after,
        )

    def reset(self, key: str, action: str) -> None:
        """Forget all recorded attempts of action for key."""
        self._limiter.clear(self._rule(action), key)
