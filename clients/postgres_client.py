"""
PostgreSQL client with connection pooling.

Uses psycopg2 with ThreadedConnectionPool. Auth tables are global (no
per-user row security); callers scope every query by user id explicitly.

One-time credentials are consumed with conditional updates
(``UPDATE ... WHERE used = false RETURNING id``) so the database decides
which of two racing requests wins. Multi-statement units that must not be
observed half-done go through ``transaction()``.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Tuple

import psycopg2
import psycopg2.extras
import psycopg2.pool

logger = logging.getLogger(__name__)

# Global JSONB registration flag
_jsonb_registered = False


class Transaction:
    """Cursor wrapper handed out by ``PostgresClient.transaction()``."""

    def __init__(self, cursor):
        self._cur = cursor

    def execute(self, query: str, params: Tuple | Dict | None = None) -> List[Dict[str, Any]]:
        """Execute inside the open transaction, return row dicts (empty if none)."""
        self._cur.execute(query, params)
        if self._cur.description:
            return [dict(row) for row in self._cur.fetchall()]
        return []

    def executemany(self, query: str, params_seq: List[Tuple]) -> None:
        self._cur.executemany(query, params_seq)

    @property
    def rowcount(self) -> int:
        return self._cur.rowcount


class PostgresClient:
    """
    PostgreSQL client.

    Usage:
        db = PostgresClient(database_url)
        user = db.execute_single("SELECT * FROM users WHERE id = %s", (1,))

        with db.transaction() as tx:
            tx.execute("DELETE FROM user_two_factor_recovery WHERE user_id = %s", (1,))
            tx.executemany("INSERT INTO user_two_factor_recovery ...", rows)
    """

    # Class-level connection pools shared across instances
    _connection_pools: Dict[str, psycopg2.pool.ThreadedConnectionPool] = {}
    _pools_lock = threading.RLock()

    def __init__(self, database_url: str):
        self._database_url = database_url
        self._ensure_connection_pool()

    def _ensure_connection_pool(self) -> None:
        """Create connection pool if it doesn't exist."""
        with self._pools_lock:
            if self._database_url not in self._connection_pools:
                pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=2,
                    maxconn=20,
                    dsn=self._database_url,
                    connect_timeout=30,
                )

                global _jsonb_registered
                if not _jsonb_registered:
                    psycopg2.extras.register_default_jsonb(globally=True)
                    _jsonb_registered = True

                self._connection_pools[self._database_url] = pool
                logger.info("Connection pool created")

    @contextmanager
    def get_connection(self):
        """Borrow a pooled connection, rolling back anything left uncommitted."""
        if self._database_url not in self._connection_pools:
            self._ensure_connection_pool()

        pool = self._connection_pools[self._database_url]
        conn = None

        try:
            conn = pool.getconn()
            if conn is None:
                raise RuntimeError("Could not get connection from pool")
            yield conn
        finally:
            if conn:
                if not conn.closed:
                    conn.rollback()
                pool.putconn(conn)

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """Run several statements atomically. Commits on exit, rolls back on error."""
        with self.get_connection() as conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                try:
                    yield Transaction(cur)
                except Exception:
                    conn.rollback()
                    raise
                conn.commit()

    def execute(self, query: str, params: Tuple | Dict | None = None) -> List[Dict[str, Any]]:
        """Execute query, return list of row dicts. Empty list if no results."""
        with self.get_connection() as conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(query, params)
                rows = [dict(row) for row in cur.fetchall()] if cur.description else []
                conn.commit()
                return rows

    def execute_single(self, query: str, params: Tuple | Dict | None = None) -> Dict[str, Any] | None:
        """Execute query, return first row or None."""
        results = self.execute(query, params)
        return results[0] if results else None

    def execute_scalar(self, query: str, params: Tuple | Dict | None = None) -> Any:
        """Execute query, return first value of first row or None."""
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                result = cur.fetchone()
                return result[0] if result else None

    def execute_returning(self, query: str, params: Tuple | Dict | None = None) -> List[Dict[str, Any]]:
        """Execute INSERT/UPDATE/DELETE with RETURNING, return results."""
        with self.get_connection() as conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(query, params)
                rows = [dict(row) for row in cur.fetchall()]
                conn.commit()
                return rows

    def ping(self) -> bool:
        """Health check. Raises psycopg2.Error if the database is unreachable."""
        self.execute_scalar("SELECT 1")
        return True

    def close(self) -> None:
        """Close connection pool."""
        with self._pools_lock:
            if self._database_url in self._connection_pools:
                self._connection_pools[self._database_url].closeall()
                del self._connection_pools[self._database_url]

    @classmethod
    def close_all_pools(cls) -> None:
        """Close all connection pools."""
        with cls._pools_lock:
            for pool in cls._connection_pools.values():
                pool.closeall()
            cls._connection_pools.clear()
