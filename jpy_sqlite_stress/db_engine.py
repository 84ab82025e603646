"""
This module contains the StorageEngine class.

Copyright (c) 2025, Jim Schilling

Please keep this header when you use this code.

This module is licensed under the MIT License.
"""
import logging
import threading
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Connection, create_engine, text
from sqlalchemy.engine import RootTransaction
from sqlalchemy.pool import StaticPool

from jpy_sqlite_stress.models import ExecuteResult
from jpy_sqlite_stress.sql_helper import detect_statement_type, parse_sql_statements

_FETCH_STATEMENT = "fetch"
_EXECUTE_STATEMENT = "execute"

# SQLite maintenance commands
_SQL_VACUUM = "VACUUM"
_SQL_ANALYZE = "ANALYZE"
_SQL_INTEGRITY_CHECK = "PRAGMA integrity_check"
_SQL_SQLITE_VERSION = "SELECT sqlite_version()"
_SQL_PING = "SELECT 1"

# SQLite PRAGMA commands
_SQL_PRAGMA_JOURNAL_MODE = "PRAGMA journal_mode=WAL"
_SQL_PRAGMA_SYNCHRONOUS = "PRAGMA synchronous=NORMAL"
_SQL_PRAGMA_CACHE_SIZE = "PRAGMA cache_size=-64000"
_SQL_PRAGMA_TEMP_STORE = "PRAGMA temp_store=MEMORY"
_SQL_PRAGMA_MMAP_SIZE = "PRAGMA mmap_size=268435456"
_SQL_PRAGMA_OPTIMIZE = "PRAGMA optimize"
_SQL_PRAGMA_FOREIGN_KEYS = "PRAGMA foreign_keys=ON"
_SQL_PRAGMA_BUSY_TIMEOUT = "PRAGMA busy_timeout=30000"
_SQL_PRAGMA_AUTO_VACUUM = "PRAGMA auto_vacuum=INCREMENTAL"

# SQLite info PRAGMA commands
_SQL_PRAGMA_PAGE_COUNT = "PRAGMA page_count"
_SQL_PRAGMA_PAGE_SIZE = "PRAGMA page_size"
_SQL_PRAGMA_JOURNAL_MODE_INFO = "PRAGMA journal_mode"
_SQL_PRAGMA_SYNCHRONOUS_INFO = "PRAGMA synchronous"

# Error messages
_ERROR_CONNECT_FAILED = "Connect failed: {}"
_ERROR_VACUUM_FAILED = "VACUUM operation failed: {}"
_ERROR_ANALYZE_FAILED = "ANALYZE operation failed: {}"
_ERROR_INTEGRITY_CHECK_FAILED = "Integrity check failed: {}"
_ERROR_COMMIT_FAILED = "Commit failed: {}"
_ERROR_ROLLBACK_FAILED = "Rollback failed: {}"
_ERROR_BEGIN_FAILED = "Begin failed: {}"
_ERROR_EXECUTE_FAILED = "Execute failed: {}"
_ERROR_QUERY_FAILED = "Query failed: {}"
_ERROR_BATCH_FAILED = "Batch failed: {}"
_ERROR_NO_TRANSACTION = "No transaction in progress"
_ERROR_NESTED_TRANSACTION = "A transaction is already in progress"
_ERROR_ENGINE_CLOSED = "Storage engine has been shut down"


class StorageError(Exception):
    """
    Exception raised when a storage operation fails.
    """

    pass


class StorageEngine:
    def __init__(self, database_url: str, **kwargs: Any) -> None:
        """
        Open a SQLite database and hold one connection to it.

        Args:
            database_url: SQLAlchemy database URL (e.g., 'sqlite:///stress_test.db')
            **kwargs: Additional configuration options:
                - debug: Enable SQLAlchemy echo mode (default: False)
                - timeout: SQLite connection timeout in seconds (default: 30)
                - check_same_thread: SQLite thread safety check (default: False)

        Raises:
            StorageError: If the database cannot be opened or configured
        """
        self.database_url = database_url
        self.engine = None
        self.db_engine_lock = threading.RLock()
        self._transaction: RootTransaction | None = None
        self._closed = False

        try:
            self.engine = create_engine(
                database_url,
                poolclass=StaticPool,
                connect_args={
                    "check_same_thread": kwargs.get("check_same_thread", False),
                    "timeout": kwargs.get("timeout", 30),
                    "isolation_level": "DEFERRED",
                },
                echo=kwargs.get("debug", False),
            )
            self._conn: Connection = self.engine.connect()
            self._configure_db_performance()
        except Exception as e:
            if self.engine is not None:
                self.engine.dispose()
            raise StorageError(_ERROR_CONNECT_FAILED.format(e)) from e

    def _configure_db_performance(self) -> None:
        """
        Apply the SQLite performance pragmas to the held connection.
        """
        conn = self._conn
        conn.execute(text(_SQL_PRAGMA_JOURNAL_MODE))
        conn.execute(text(_SQL_PRAGMA_SYNCHRONOUS))
        conn.execute(text(_SQL_PRAGMA_CACHE_SIZE))
        conn.execute(text(_SQL_PRAGMA_TEMP_STORE))
        conn.execute(text(_SQL_PRAGMA_MMAP_SIZE))
        conn.execute(text(_SQL_PRAGMA_OPTIMIZE))
        conn.execute(text(_SQL_PRAGMA_FOREIGN_KEYS))
        conn.execute(text(_SQL_PRAGMA_BUSY_TIMEOUT))
        conn.execute(text(_SQL_PRAGMA_AUTO_VACUUM))
        conn.commit()

    @contextmanager
    def _db_engine_lock(self) -> Generator[Connection, None, None]:
        """
        Acquire the engine lock and yield the held connection.
        """
        with self.db_engine_lock:
            if self._closed:
                raise StorageError(_ERROR_ENGINE_CLOSED)
            yield self._conn

    def _finish_implicit(self, conn: Connection) -> None:
        # Outside begin()/commit() every statement is its own transaction.
        if self._transaction is None and conn.in_transaction():
            conn.commit()

    def _abort_implicit(self, conn: Connection) -> None:
        if self._transaction is None and conn.in_transaction():
            try:
                conn.rollback()
            except Exception:
                logging.exception("Rollback after failed statement failed.")

    def execute(
        self,
        statement: str,
        params: dict[str, Any] | list[dict[str, Any]] | None = None,
    ) -> ExecuteResult:
        """
        Execute a SQL statement that doesn't return rows.

        Args:
            statement: SQL statement to execute
            params: Parameters for the statement; a list runs it once per entry

        Returns:
            ExecuteResult with the last inserted row id and the affected row count

        Raises:
            StorageError: If the statement fails
        """
        with self._db_engine_lock() as conn:
            try:
                result = conn.execute(text(statement), params or {})
                outcome = ExecuteResult(
                    last_insert_id=result.lastrowid if not isinstance(params, list) else None,
                    rows_affected=max(result.rowcount or 0, 0),
                )
                self._finish_implicit(conn)
            except Exception as e:
                self._abort_implicit(conn)
                raise StorageError(_ERROR_EXECUTE_FAILED.format(e)) from e
            return outcome

    def query(
        self, statement: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """
        Execute a SQL query that returns rows.

        Args:
            statement: SQL query to execute
            params: Parameters for the SQL query (optional)

        Returns:
            List of dictionaries representing the result rows

        Raises:
            StorageError: If the query fails
        """
        with self._db_engine_lock() as conn:
            try:
                result = conn.execute(text(statement), params or {})
                rows = [dict(row._mapping) for row in result.fetchall()]
                self._finish_implicit(conn)
            except Exception as e:
                self._abort_implicit(conn)
                raise StorageError(_ERROR_QUERY_FAILED.format(e)) from e
            return rows

    def batch(self, batch_sql: str) -> list[dict[str, Any]]:
        """
        Execute a multi-statement SQL script in one transaction.

        Args:
            batch_sql: SQL string containing multiple statements

        Returns:
            List of results for each statement

        Raises:
            StorageError: If any statement fails; the whole script is rolled back
        """
        statements = parse_sql_statements(batch_sql)
        results: list[dict[str, Any]] = []
        try:
            self._run_batch(statements, results)
        except StorageError as e:
            raise StorageError(_ERROR_BATCH_FAILED.format(e)) from e
        return results

    def _run_batch(self, statements: list[str], results: list[dict[str, Any]]) -> None:
        with self.transaction():
            for stmt in statements:
                if detect_statement_type(stmt) == _FETCH_STATEMENT:
                    results.append(
                        {
                            "statement": stmt,
                            "operation": _FETCH_STATEMENT,
                            "result": self.query(stmt),
                        }
                    )
                else:
                    outcome = self.execute(stmt)
                    results.append(
                        {
                            "statement": stmt,
                            "operation": _EXECUTE_STATEMENT,
                            "result": outcome.rows_affected,
                        }
                    )

    def begin(self) -> None:
        """
        Start an explicit transaction on the held connection.

        Raises:
            StorageError: If a transaction is already in progress or BEGIN fails
        """
        with self._db_engine_lock() as conn:
            if self._transaction is not None:
                raise StorageError(_ERROR_NESTED_TRANSACTION)
            try:
                if conn.in_transaction():
                    conn.commit()
                self._transaction = conn.begin()
            except Exception as e:
                raise StorageError(_ERROR_BEGIN_FAILED.format(e)) from e

    def commit(self) -> None:
        """
        Commit the explicit transaction.

        Raises:
            StorageError: If no transaction is in progress or COMMIT fails
        """
        with self._db_engine_lock():
            if self._transaction is None:
                raise StorageError(_ERROR_NO_TRANSACTION)
            transaction, self._transaction = self._transaction, None
            try:
                transaction.commit()
            except Exception as e:
                try:
                    transaction.rollback()
                except Exception:
                    logging.exception("Rollback after failed commit failed.")
                raise StorageError(_ERROR_COMMIT_FAILED.format(e)) from e

    def rollback(self) -> None:
        """
        Abort the explicit transaction, discarding its writes.

        Raises:
            StorageError: If no transaction is in progress or ROLLBACK fails
        """
        with self._db_engine_lock():
            if self._transaction is None:
                raise StorageError(_ERROR_NO_TRANSACTION)
            transaction, self._transaction = self._transaction, None
            try:
                transaction.rollback()
            except Exception as e:
                raise StorageError(_ERROR_ROLLBACK_FAILED.format(e)) from e

    def in_transaction(self) -> bool:
        return self._transaction is not None

    def _require_no_transaction(self) -> None:
        # ANALYZE and VACUUM commit on their own and cannot join a transaction.
        if self._transaction is not None:
            raise StorageError(_ERROR_NESTED_TRANSACTION)

    @contextmanager
    def transaction(self) -> Generator["StorageEngine", None, None]:
        """
        Run the enclosed statements in one transaction.

        Commits when the block exits normally and rolls back when it raises.

        Example:
            with engine.transaction():
                engine.execute("INSERT INTO logs (level) VALUES (:level)", {"level": "INFO"})
        """
        with self.db_engine_lock:
            self.begin()
            try:
                yield self
            except BaseException:
                if self._transaction is not None:
                    self.rollback()
                raise
            self.commit()

    def reindex_statistics(self) -> None:
        """
        Perform an ANALYZE operation to update query planner statistics.

        Raises:
            StorageError: If the ANALYZE operation fails
        """
        with self._db_engine_lock() as conn:
            self._require_no_transaction()
            try:
                conn.execute(text(_SQL_ANALYZE))
                conn.commit()
            except Exception as e:
                conn.rollback()
                raise StorageError(_ERROR_ANALYZE_FAILED.format(e)) from e

    def reclaim_space(self) -> None:
        """
        Perform a VACUUM operation to rebuild the file and release free pages.

        Raises:
            StorageError: If the VACUUM operation fails or a transaction is open
        """
        with self._db_engine_lock() as conn:
            self._require_no_transaction()
            try:
                if conn.in_transaction():
                    conn.commit()
                conn.execute(text(_SQL_VACUUM))
                conn.commit()
            except Exception as e:
                conn.rollback()
                raise StorageError(_ERROR_VACUUM_FAILED.format(e)) from e

    def storage_size(self) -> int:
        """
        Return the size of the database in bytes (page_count * page_size).
        """
        page_count = self._scalar(_SQL_PRAGMA_PAGE_COUNT)
        page_size = self._scalar(_SQL_PRAGMA_PAGE_SIZE)
        return page_count * page_size if page_count and page_size else 0

    def _scalar(self, statement: str) -> Any:
        rows = self.query(statement)
        if not rows:
            return None
        return next(iter(rows[0].values()))

    def integrity_check(self) -> list[str]:
        """
        Perform an integrity check on the database.

        Returns:
            List of integrity issues found (empty list if no issues)

        Raises:
            StorageError: If the integrity check fails
        """
        try:
            rows = self.query(_SQL_INTEGRITY_CHECK)
        except StorageError as e:
            raise StorageError(_ERROR_INTEGRITY_CHECK_FAILED.format(e)) from e
        values = [next(iter(row.values())) for row in rows]
        return [value for value in values if value != "ok"]

    def get_sqlite_info(self) -> dict[str, Any]:
        """
        Get SQLite-specific information about the database.

        Returns:
            Dictionary containing SQLite version, database size, and other info
        """
        return {
            "sqlite_version": self._scalar(_SQL_SQLITE_VERSION),
            "database_size": self.storage_size(),
            "page_count": self._scalar(_SQL_PRAGMA_PAGE_COUNT),
            "page_size": self._scalar(_SQL_PRAGMA_PAGE_SIZE),
            "journal_mode": self._scalar(_SQL_PRAGMA_JOURNAL_MODE_INFO),
            "synchronous": self._scalar(_SQL_PRAGMA_SYNCHRONOUS_INFO),
        }

    def is_usable(self) -> bool:
        """
        Probe the connection with a trivial query.

        Returns:
            False when the engine is shut down or the probe fails
        """
        if self._closed:
            return False
        try:
            self.query(_SQL_PING)
        except StorageError:
            logging.warning("Storage engine probe failed.", exc_info=True)
            return False
        return True

    def shutdown(self) -> None:
        """
        Close the held connection and dispose of the engine.

        Safe to call more than once; an open transaction is rolled back.
        """
        with self.db_engine_lock:
            if self._closed:
                return
            self._closed = True
            try:
                if self._transaction is not None:
                    self._transaction.rollback()
                    self._transaction = None
                self._conn.close()
            except Exception:
                logging.exception("Error closing storage connection.")
            finally:
                self.engine.dispose()
