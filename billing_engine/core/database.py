"""
Database Connection Manager for the Representative Billing Engine.

This module provides database connection management with:
- A threaded connection pool for the billing database
- Retry logic with exponential backoff
- Transaction scopes for atomic multi-statement work
- Health checks and connection metrics

Usage:
    >>> from billing_engine.core.database import get_database_manager
    >>> db_manager = get_database_manager()
    >>> with db_manager.transaction() as conn:
    ...     with conn.cursor() as cursor:
    ...         cursor.execute("SELECT 1")
"""

import random
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Any, Tuple, Generator

import psycopg2
import psycopg2.extras
import psycopg2.pool
from psycopg2 import DatabaseError, OperationalError, InterfaceError
import structlog

from .config import get_settings, Settings


logger = structlog.get_logger(__name__)


class DatabaseConnectionError(Exception):
    """Raised when database connection fails"""
    pass


class DatabaseQueryError(Exception):
    """Raised when database query fails"""
    pass


@dataclass
class ConnectionMetrics:
    """Connection metrics for monitoring"""
    total_connections: int = 0
    active_connections: int = 0
    failed_connections: int = 0
    total_queries: int = 0
    failed_queries: int = 0
    avg_query_time: float = 0.0
    last_health_check: Optional[datetime] = None
    health_check_passed: bool = False


@dataclass
class RetryConfig:
    """Retry configuration for database operations"""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True

    def delay_for(self, attempt: int) -> float:
        """Backoff delay before retrying after ``attempt`` (0-based)"""
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)
        return delay


class ConnectionPool:
    """Connection pool with monitoring and retry logic"""

    def __init__(
        self,
        database_name: str,
        connection_url: str,
        min_connections: int = 1,
        max_connections: int = 10,
        retry_config: Optional[RetryConfig] = None
    ):
        self.database_name = database_name
        self.connection_url = connection_url
        self.min_connections = min_connections
        self.max_connections = max_connections
        self.retry_config = retry_config or RetryConfig()

        self._pool: Optional[psycopg2.pool.ThreadedConnectionPool] = None
        self._metrics = ConnectionMetrics()
        self._logger = logger.bind(database=database_name)

        self._create_pool()

    def _create_pool(self) -> None:
        """Create the connection pool with retry logic"""
        for attempt in range(self.retry_config.max_attempts):
            try:
                self._logger.info(
                    "creating_connection_pool",
                    attempt=attempt + 1,
                    min_conn=self.min_connections,
                    max_conn=self.max_connections
                )

                self._pool = psycopg2.pool.ThreadedConnectionPool(
                    self.min_connections,
                    self.max_connections,
                    self.connection_url,
                    cursor_factory=psycopg2.extras.RealDictCursor
                )
                self._logger.info("connection_pool_created")
                return

            except (DatabaseError, OperationalError, InterfaceError) as e:
                self._logger.warning(
                    "connection_pool_creation_failed",
                    attempt=attempt + 1,
                    error=str(e)
                )

                if attempt == self.retry_config.max_attempts - 1:
                    raise DatabaseConnectionError(
                        f"Failed to create connection pool for {self.database_name}: {e}"
                    )

                time.sleep(self.retry_config.delay_for(attempt))

    @contextmanager
    def get_connection(self) -> Generator[psycopg2.extensions.connection, None, None]:
        """Get a connection from the pool with proper cleanup"""
        if not self._pool:
            raise DatabaseConnectionError(f"Connection pool not initialized for {self.database_name}")

        connection = None
        try:
            connection = self._pool.getconn()
            self._metrics.active_connections += 1
            self._metrics.total_connections += 1

            yield connection

        except (OperationalError, InterfaceError) as e:
            self._metrics.failed_connections += 1
            self._logger.error("database_connection_error", error=str(e))
            if connection and not connection.closed:
                connection.rollback()
            raise DatabaseConnectionError(f"Database error in {self.database_name}: {e}")

        finally:
            if connection:
                self._metrics.active_connections -= 1
                self._pool.putconn(connection)

    @contextmanager
    def transaction(self) -> Generator[psycopg2.extensions.connection, None, None]:
        """Run a block inside one transaction: commit on success, roll back on any error"""
        with self.get_connection() as conn:
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def execute_query(
        self,
        query: str,
        params: Optional[Tuple] = None,
        fetch: str = "none"
    ) -> Optional[Any]:
        """Execute a single-statement query with retry logic and metrics tracking"""
        start_time = time.time()

        for attempt in range(self.retry_config.max_attempts):
            try:
                with self.transaction() as conn:
                    with conn.cursor() as cursor:
                        cursor.execute(query, params)

                        result = None
                        if fetch == "all":
                            result = cursor.fetchall()
                        elif fetch == "one":
                            result = cursor.fetchone()

                query_time = time.time() - start_time
                self._metrics.total_queries += 1
                self._metrics.avg_query_time = (
                    (self._metrics.avg_query_time * (self._metrics.total_queries - 1) + query_time)
                    / self._metrics.total_queries
                )
                return result

            except (DatabaseError, DatabaseConnectionError) as e:
                self._metrics.failed_queries += 1
                self._logger.warning(
                    "query_execution_failed",
                    attempt=attempt + 1,
                    error=str(e),
                    query=query[:100] + "..." if len(query) > 100 else query
                )

                if attempt == self.retry_config.max_attempts - 1:
                    raise DatabaseQueryError(f"Query failed after {self.retry_config.max_attempts} attempts: {e}")

                time.sleep(self.retry_config.delay_for(attempt))

    def health_check(self) -> bool:
        """Perform health check on the connection pool"""
        try:
            result = self.execute_query("SELECT 1 as health_check", fetch="one")
            success = result is not None and result.get("health_check") == 1
        except DatabaseQueryError as e:
            self._logger.error("health_check_failed", error=str(e))
            success = False

        self._metrics.last_health_check = datetime.now()
        self._metrics.health_check_passed = success
        return success

    def get_metrics(self) -> ConnectionMetrics:
        """Get current connection metrics"""
        return self._metrics

    def close(self) -> None:
        """Close the connection pool"""
        if self._pool:
            self._pool.closeall()
            self._logger.info("connection_pool_closed")


class DatabaseManager:
    """
    Central database manager for the billing database.

    Features:
    - Connection pooling with configurable pool sizes
    - Automatic retry with exponential backoff
    - Transaction scopes
    - Health monitoring and metrics collection
    """

    def __init__(self, settings: Optional[Settings] = None):
        """
        Initialize the database manager with configuration settings.

        Args:
            settings: Optional settings instance. If None, will load from get_settings()
        """
        self.settings = settings or get_settings()
        self._logger = logger.bind(component="database_manager")
        self._pool = ConnectionPool(
            database_name="billing",
            connection_url=self.settings.database.billing_db_url,
            min_connections=self.settings.database.billing_db_pool_min,
            max_connections=self.settings.database.billing_db_pool_max,
            retry_config=RetryConfig(max_attempts=3, base_delay=1.0)
        )
        self._logger.info("database_manager_initialized")

    @contextmanager
    def get_connection(self) -> Generator[psycopg2.extensions.connection, None, None]:
        """Get a raw pooled connection; the caller owns commit/rollback"""
        with self._pool.get_connection() as conn:
            yield conn

    @contextmanager
    def transaction(self) -> Generator[psycopg2.extensions.connection, None, None]:
        """
        Open a transaction on a pooled connection.

        Example:
            >>> with db_manager.transaction() as conn:
            ...     with conn.cursor() as cursor:
            ...         cursor.execute("INSERT INTO billing.invoices ...")
        """
        with self._pool.transaction() as conn:
            yield conn

    def execute_query(
        self,
        query: str,
        params: Optional[Tuple] = None,
        fetch: str = "none"
    ) -> Optional[Any]:
        """
        Execute a single statement in its own transaction.

        Args:
            query: SQL query to execute
            params: Query parameters
            fetch: Fetch mode ('none', 'one', 'all')

        Returns:
            Query results based on fetch mode
        """
        return self._pool.execute_query(query, params, fetch)

    def health_check(self) -> Dict[str, bool]:
        """Perform a health check on the billing database"""
        return {"billing": self._pool.health_check()}

    def get_pool_info(self) -> Dict[str, Any]:
        """Get pool information for monitoring"""
        metrics = self._pool.get_metrics()
        return {
            "database_name": self._pool.database_name,
            "min_connections": self._pool.min_connections,
            "max_connections": self._pool.max_connections,
            "total_connections": metrics.total_connections,
            "active_connections": metrics.active_connections,
            "failed_connections": metrics.failed_connections,
            "total_queries": metrics.total_queries,
            "failed_queries": metrics.failed_queries,
            "avg_query_time": metrics.avg_query_time,
            "last_health_check": metrics.last_health_check.isoformat() if metrics.last_health_check else None,
            "health_check_passed": metrics.health_check_passed,
        }

    def close_all(self) -> None:
        """Close the connection pool"""
        self._pool.close()
        self._logger.info("database_manager_closed")


# Global database manager instance
_db_manager: Optional[DatabaseManager] = None


def get_database_manager(settings: Optional[Settings] = None) -> DatabaseManager:
    """
    Get the global database manager instance.

    Args:
        settings: Optional settings instance for initialization

    Returns:
        DatabaseManager: The global database manager instance
    """
    global _db_manager

    if _db_manager is None:
        _db_manager = DatabaseManager(settings)

    return _db_manager


def close_database_manager() -> None:
    """Close the global database manager and clean up connections"""
    global _db_manager

    if _db_manager is not None:
        _db_manager.close_all()
        _db_manager = None
