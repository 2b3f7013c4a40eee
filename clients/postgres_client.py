"""
PostgreSQL client with connection pooling and per-studio RLS isolation.

Uses psycopg2 with ThreadedConnectionPool. Tenant isolation is enforced via
PostgreSQL Row Level Security: the studio ID is read from the tenant
contextvar and set as app.current_studio_id on each connection.

Single statements auto-commit. Multi-statement financial mutations use
transaction(), which holds one connection, commits on success and rolls back
on any exception so totals are never written without their status.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Tuple
from uuid import UUID

import psycopg2
import psycopg2.extras
import psycopg2.pool

from utils.tenant_context import _current_studio_id

logger = logging.getLogger(__name__)

_jsonb_registered = False

Params = Tuple | Dict | None


def _convert_params(params: Params) -> Params:
    """Convert UUID objects to strings (psycopg2 has no UUID adapter by default)."""
    if params is None:
        return None

    def convert(value: Any) -> Any:
        if isinstance(value, UUID):
            return str(value)
        if isinstance(value, list):
            return [convert(v) for v in value]
        if isinstance(value, tuple):
            return tuple(convert(v) for v in value)
        if isinstance(value, dict):
            return {k: convert(v) for k, v in value.items()}
        return value

    return convert(params)


class PostgresTransaction:
    """
    Query interface bound to one open connection.

    Nothing is committed until the enclosing PostgresClient.transaction()
    block exits cleanly.
    """

    def __init__(self, conn):
        self._conn = conn

    def execute(self, query: str, params: Params = None) -> List[Dict[str, Any]]:
        """Rows as dicts; empty for statements that return nothing."""
        with self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
            cur.execute(query, _convert_params(params))
            return [dict(row) for row in cur.fetchall()] if cur.description else []

    def execute_single(self, query: str, params: Params = None) -> Dict[str, Any] | None:
        rows = self.execute(query, params)
        return rows[0] if rows else None

    # RETURNING statements read the same way as SELECTs
    execute_returning = execute

    def execute_scalar(self, query: str, params: Params = None) -> Any:
        with self._conn.cursor() as cur:
            cur.execute(query, _convert_params(params))
            first = cur.fetchone()
            return first[0] if first else None


class PostgresClient:
    """
    PostgreSQL client with automatic RLS context from the tenant contextvar.

    - Studio context set → sees only that studio's rows
    - No studio context → sees nothing (RLS blocks all rows)

    Usage:
        db = PostgresClient(database_url)

        with tenant_context(studio_id, user_id):
            invoice = db.execute_single("SELECT * FROM invoices WHERE id = %s", (invoice_id,))

            with db.transaction() as tx:
                tx.execute("SELECT * FROM invoices WHERE id = %s FOR UPDATE", (invoice_id,))
                tx.execute_returning("UPDATE invoices SET ... RETURNING *", (...))
    """

    # Class-level connection pools shared across instances
    _connection_pools: Dict[str, psycopg2.pool.ThreadedConnectionPool] = {}
    _pools_lock = threading.RLock()

    def __init__(self, database_url: str, min_connections: int = 2, max_connections: int = 20):
        self._database_url = database_url
        self._min_connections = min_connections
        self._max_connections = max_connections
        self._ensure_connection_pool()

    def _ensure_connection_pool(self) -> None:
        """Create connection pool if it doesn't exist."""
        with self._pools_lock:
            if self._database_url not in self._connection_pools:
                pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=self._min_connections,
                    maxconn=self._max_connections,
                    dsn=self._database_url,
                    connect_timeout=30,
                )

                global _jsonb_registered
                if not _jsonb_registered:
                    psycopg2.extras.register_default_jsonb(globally=True)
                    _jsonb_registered = True

                self._connection_pools[self._database_url] = pool
                logger.info("Connection pool created")

    @staticmethod
    def _apply_studio_context(conn) -> None:
        studio_id = _current_studio_id.get()
        with conn.cursor() as cur:
            if studio_id is None:
                # RLS policies cast to uuid, which fails on '' = no rows
                cur.execute("SET app.current_studio_id = ''")
            else:
                cur.execute("SET app.current_studio_id = %s", (str(studio_id),))

    @contextmanager
    def get_connection(self):
        """Borrow a pooled connection scoped to the current studio."""
        self._ensure_connection_pool()
        pool = self._connection_pools[self._database_url]

        conn = pool.getconn()
        if conn is None:
            raise RuntimeError("Could not get connection from pool")
        try:
            self._apply_studio_context(conn)
            yield conn
        finally:
            pool.putconn(conn)

    @contextmanager
    def transaction(self) -> Iterator[PostgresTransaction]:
        """
        Run several statements atomically on one connection.

        Commits when the block exits normally; rolls back and re-raises on
        any exception.
        """
        with self.get_connection() as conn:
            try:
                yield PostgresTransaction(conn)
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    # Single statements run in their own short transaction: committed on
    # success, rolled back if the statement fails.

    def execute(self, query: str, params: Params = None) -> List[Dict[str, Any]]:
        """Execute query, return list of row dicts. Empty list if no results."""
        with self.transaction() as tx:
            return tx.execute(query, params)

    def execute_single(self, query: str, params: Params = None) -> Dict[str, Any] | None:
        """Execute query, return first row or None."""
        with self.transaction() as tx:
            return tx.execute_single(query, params)

    def execute_scalar(self, query: str, params: Params = None) -> Any:
        """Execute query, return first value of first row or None."""
        with self.transaction() as tx:
            return tx.execute_scalar(query, params)

    def execute_returning(self, query: str, params: Params = None) -> List[Dict[str, Any]]:
        """Execute INSERT/UPDATE with RETURNING, return results."""
        with self.transaction() as tx:
            return tx.execute_returning(query, params)

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
