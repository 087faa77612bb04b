"""
Valkey (Redis-compatible) client for ephemeral auth state.

Holds two-factor tickets, OAuth tickets and attempt counters. Durable auth
state (users, sessions, one-time tokens) lives in Postgres.

Every operation that a single-use or counting guarantee depends on maps to
one atomic server command (DEL, GETDEL, SET ... GET) or one MULTI block.
Fail-fast: raises on connection failure, never returns fallback values.
"""

import json
import logging

import redis

logger = logging.getLogger(__name__)


class ValkeyClient:
    """
    Redis-compatible client for Valkey.

    Usage:
        client = ValkeyClient("redis://localhost:6379/0")
        client.set_json("ticket:oauth:ab12", {"provider": "github"}, expire_seconds=600)
        claims = client.pop_json("ticket:oauth:ab12")  # None for the second caller
    """

    def __init__(self, url: str):
        """
        Initialize Valkey connection.

        Raises:
            redis.ConnectionError: If connection fails
        """
        self._client = redis.from_url(url, decode_responses=True)
        # Verify connectivity immediately (fail-fast)
        self._client.ping()
        logger.info("ValkeyClient connected")

    def ping(self) -> bool:
        """Health check. Raises redis.ConnectionError if unreachable."""
        self._client.ping()
        return True

    def get(self, key: str) -> str | None:
        return self._client.get(key)

    def set(self, key: str, value: str, expire_seconds: int | None = None) -> None:
        if expire_seconds is not None:
            self._client.setex(key, expire_seconds, value)
        else:
            self._client.set(key, value)

    def swap(self, key: str, value: str, expire_seconds: int) -> str | None:
        """
        Replace a value and return the one it displaced (SET ... GET).

        Two concurrent swaps each see a distinct previous value, so a
        pointer key can be moved without losing track of what it held.
        """
        return self._client.set(key, value, ex=expire_seconds, get=True)

    def delete(self, key: str) -> bool:
        """
        Delete key. True if it existed.

        Of several concurrent deletes of the same key exactly one returns True.
        """
        return self._client.delete(key) > 0

    def ttl(self, key: str) -> int:
        """
        Remaining TTL in seconds.

        Returns:
            -2 if key doesn't exist
            -1 if key has no expiration
            Positive int: remaining seconds
        """
        return self._client.ttl(key)

    def count_attempt(self, key: str, window_seconds: int) -> int:
        """
        Increment an attempt counter and (re)start its window.

        INCR and EXPIRE run in one MULTI block so a counter never outlives
        its window.

        Returns:
            The counter value after this attempt.
        """
        pipe = self._client.pipeline(transaction=True)
        pipe.incr(key)
        pipe.expire(key, window_seconds)
        count, _ = pipe.execute()
        return count

    def set_json(self, key: str, value: dict | list, expire_seconds: int | None = None) -> None:
        self.set(key, json.dumps(value), expire_seconds)

    def get_json(self, key: str) -> dict | list | None:
        """
        Get and deserialize JSON value.

        Returns None if key doesn't exist.
        Raises ValueError if value is not valid JSON.
        """
        return self._decode(key, self.get(key))

    def pop_json(self, key: str) -> dict | list | None:
        """
        Atomically read and delete a JSON value (GETDEL).

        Returns None if the key doesn't exist or another caller popped it first.
        """
        return self._decode(key, self._client.getdel(key))

    @staticmethod
    def _decode(key: str, value: str | None) -> dict | list | None:
        if value is None:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in key '{key}': {e}")

    def close(self) -> None:
        """Close connection."""
        self._client.close()
