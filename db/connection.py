"""
PostgreSQL Connection Helper

Shared connection pool for the staging, bad-rows, lookup and phase-log tables.
Data sources may run in parallel, so pool setup and teardown are serialized.
"""

import threading
import psycopg2
from psycopg2 import pool, OperationalError
from psycopg2.extras import RealDictCursor, execute_values
from contextlib import contextmanager
from typing import Optional, Iterator, Any, Dict, List, Sequence
import logging

logger = logging.getLogger(__name__)


class DatabaseConnection:
    """
    Manages PostgreSQL connections with a thread-safe connection pool.
    """

    _pool: Optional[pool.ThreadedConnectionPool] = None
    _lock = threading.Lock()

    @classmethod
    def initialize(
        cls,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_connections: int = 1,
        max_connections: int = 10,
    ) -> None:
        """
        Initialize the connection pool. Calling it again while a pool exists is a no-op.

        Args:
            host: PostgreSQL server host
            port: PostgreSQL server port
            database: Database name
            user: Database user
            password: Database password
            min_connections: Minimum pool connections
            max_connections: Maximum pool connections

        Raises:
            OperationalError: If connection fails
        """
        with cls._lock:
            if cls._pool is not None:
                logger.debug("Database pool already initialized")
                return
            try:
                cls._pool = pool.ThreadedConnectionPool(
                    min_connections,
                    max_connections,
                    host=host,
                    port=port,
                    database=database,
                    user=user,
                    password=password,
                    connect_timeout=10,
                )
                logger.info(f"Database pool initialized with {min_connections}-{max_connections} connections")
            except OperationalError as e:
                logger.error(f"Failed to initialize database pool: {e}")
                raise

    @classmethod
    def is_initialized(cls) -> bool:
        return cls._pool is not None

    @classmethod
    def close_all(cls) -> None:
        """Close all connections in the pool."""
        with cls._lock:
            if cls._pool:
                cls._pool.closeall()
                cls._pool = None
                logger.info("Database pool closed")

    @classmethod
    @contextmanager
    def get_connection(cls) -> Iterator[Any]:
        """
        Context manager to get a connection from the pool.

        Commits on success and rolls back on any error before re-raising it.

        Yields:
            psycopg2 connection object

        Raises:
            OperationalError: If pool is not initialized or connection fails
        """
        if cls._pool is None:
            raise OperationalError("Database pool not initialized. Call initialize() first.")

        conn = cls._pool.getconn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            conn.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            cls._pool.putconn(conn)

    @classmethod
    @contextmanager
    def get_cursor(cls, as_dict: bool = False) -> Iterator[Any]:
        """
        Context manager to get a cursor for direct SQL execution.

        Args:
            as_dict: Return rows as dictionaries keyed by column name

        Yields:
            psycopg2 cursor object

        Example:
            with DatabaseConnection.get_cursor(as_dict=True) as cursor:
                cursor.execute('SELECT * FROM bad_rows WHERE "LoadNum" = %s', (7,))
                results = cursor.fetchall()
        """
        with cls.get_connection() as conn:
            cursor = conn.cursor(cursor_factory=RealDictCursor) if as_dict else conn.cursor()
            try:
                yield cursor
            finally:
                cursor.close()

    @classmethod
    def execute_query(cls, query: Any, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        """
        Execute a SELECT query and return results as dictionaries.

        Args:
            query: SQL query string or psycopg2.sql.Composed
            params: Query parameters (optional)

        Returns:
            List of result rows keyed by column name
        """
        with cls.get_cursor(as_dict=True) as cursor:
            cursor.execute(query, params or ())
            return [dict(row) for row in cursor.fetchall()]

    @classmethod
    def execute_update(cls, query: Any, params: Optional[Sequence[Any]] = None) -> int:
        """
        Execute an INSERT/UPDATE/DELETE query.

        Returns:
            Number of rows affected
        """
        with cls.get_cursor() as cursor:
            cursor.execute(query, params or ())
            return cursor.rowcount

    @classmethod
    def execute_returning(cls, query: Any, params: Optional[Sequence[Any]] = None) -> Any:
        """
        Execute a statement with a RETURNING clause and return the first column of the first row.
        """
        with cls.get_cursor() as cursor:
            cursor.execute(query, params or ())
            row = cursor.fetchone()
            return row[0] if row else None

    @classmethod
    def execute_values(cls, query: Any, rows: List[tuple], page_size: int = 500) -> int:
        """
        Insert many rows with a single multi-VALUES statement per page.

        Args:
            query: INSERT statement with a single ``VALUES %s`` placeholder
            rows: Row tuples in column order
            page_size: Rows per generated statement

        Returns:
            Number of rows submitted
        """
        if not rows:
            return 0
        with cls.get_cursor() as cursor:
            execute_values(cursor, query, rows, page_size=page_size)
        return len(rows)
