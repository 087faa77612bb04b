"""Attempt counters in Valkey.

One limiter per scope (login by email, password reset by email, failed
second-factor codes by ticket and by user). Counters use INCR so concurrent
attempts are counted exactly, with the window set in the same MULTI block.
Each recorded attempt resets the window, so hammering only extends the lockout.
"""

from clients.valkey_client import ValkeyClient
from auth.exceptions import RateLimitedError


class RateLimiter:
    """Fixed-threshold attempt limiter for one scope."""

    KEY_PREFIX = "ratelimit:"

    def __init__(self, valkey: ValkeyClient, scope: str, max_attempts: int, window_seconds: int):
        self._valkey = valkey
        self._scope = scope
        self._max_attempts = max_attempts
        self._window_seconds = window_seconds

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def _key(self, identifier: str) -> str:
        """Rate limit key for an identifier (normalized to lowercase)."""
        return f"{self.KEY_PREFIX}{self._scope}:{identifier.lower()}"

    def _retry_after(self, key: str) -> int:
        ttl = self._valkey.ttl(key)
        return max(ttl, 1)  # At least 1 second

    def check_rate_limit(self, identifier: str) -> None:
        """Count this attempt and refuse it if over the limit.

        Raises:
            RateLimitedError: If rate limit exceeded.
        """
        key = self._key(identifier)
        count = self._valkey.count_attempt(key, self._window_seconds)

        if count > self._max_attempts:
            raise RateLimitedError(retry_after_seconds=self._retry_after(key))

    def ensure_not_locked(self, identifier: str) -> None:
        """Refuse without counting if earlier failures already reached the limit.

        Raises:
            RateLimitedError: If locked out.
        """
        key = self._key(identifier)
        current = self._valkey.get(key)
        if current is not None and int(current) >= self._max_attempts:
            raise RateLimitedError(retry_after_seconds=self._retry_after(key))

    def record_failure(self, identifier: str) -> int:
        """Count one failure.

        Returns:
            Failures so far in the window.

        Raises:
            RateLimitedError: If this failure reached the limit.
        """
        key = self._key(identifier)
        count = self._valkey.count_attempt(key, self._window_seconds)

        if count >= self._max_attempts:
            raise RateLimitedError(retry_after_seconds=self._retry_after(key))
        return count

    def reset_rate_limit(self, identifier: str) -> None:
        """Clear the counter after a success."""
        self._valkey.delete(self._key(identifier))
