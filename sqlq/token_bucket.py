"""Token bucket used to rate limit async push notifications."""

from __future__ import annotations

from dataclasses import dataclass, field

_MILLIS_PER_MINUTE = 60_000


@dataclass
class TokenBucket:
    """A bucket holding up to ``capacity`` tokens, refilled at ``rpm`` per minute.

    The bucket starts full. Time is supplied by the caller in Unix milliseconds.
    """

    capacity: int
    rpm: int = 0
    _tokens: int | None = field(default=None, init=False, repr=False)
    _last_check_ms: int = field(default=0, init=False, repr=False)

    def spend_token(self, curr_unix_milli: int) -> bool:
        """Take one token if available; return whether a token was spent."""
        tokens = self.capacity if self._tokens is None else self._tokens

        passed = curr_unix_milli - self._last_check_ms
        to_add = self.rpm * passed // _MILLIS_PER_MINUTE if passed > 0 else 0
        if to_add > 0:
            tokens += to_add
            # Only move the refill clock when tokens were actually added,
            # otherwise frequent failed spends would starve the refill.
            self._last_check_ms = curr_unix_milli

        tokens = min(tokens, self.capacity)
        if tokens <= 0:
            return False

        self._tokens = tokens - 1
        return True