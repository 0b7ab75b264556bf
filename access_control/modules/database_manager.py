"""
Database Manager Module - Library Access Control

This module handles database connections and schema for the access control
core. The scan log is the only durable state the core owns; subscriptions are
mirrored here read-only for the validator.

Features:
- SQLite connection management (one connection per thread)
- WAL journal mode and busy timeout for concurrent scan stations
- Explicit IMMEDIATE transactions as the write serialization point
- Append-only enforcement on the scan log via triggers
- Query helpers with logging
"""

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Optional

from config import DatabaseConfig


class DatabaseManager:
    """
    SQLite database management for the access control system.
    Handles connection management, schema creation and transactions with
    proper error handling.
    """

    def __init__(self, db_path, timeout: float = 30.0):
        """
        Initialize the database manager with the specified database path.

        Args:
            db_path (str): Path to the SQLite database file, or ':memory:'
            timeout (float): Default seconds to wait on a locked database
        """
        self.db_path = str(db_path)
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)
        self._local = threading.local()

        # Ensure database directory exists
        directory = os.path.dirname(self.db_path)
        if self.db_path != ':memory:' and directory:
            os.makedirs(directory, exist_ok=True)

        # Initialize database schema if it doesn't exist
        self.initialize_database()

    @contextmanager
    def get_connection(self):
        """
        Context manager for database connections.
        Provides thread-local connections for thread safety. With ':memory:'
        every thread therefore sees its own private database.

        Yields:
            sqlite3.Connection: Database connection object
        """
        if not hasattr(self._local, 'connection'):
            # Autocommit mode; transactions are opened explicitly
            connection = sqlite3.connect(
                self.db_path,
                check_same_thread=DatabaseConfig.CHECK_SAME_THREAD,
                timeout=self.timeout,
                isolation_level=None
            )
            connection.row_factory = sqlite3.Row
            if self.db_path != ':memory:':
                connection.execute(f"PRAGMA journal_mode = {DatabaseConfig.JOURNAL_MODE}")
                connection.execute(f"PRAGMA synchronous = {DatabaseConfig.SYNCHRONOUS}")
            self._local.connection = connection

        yield self._local.connection

    def initialize_database(self):
        """
        Create all necessary tables for the access control system.
        This method is idempotent and can be called multiple times safely.
        """
        try:
            with self.transaction() as conn:
                cursor = conn.cursor()

                # Append-only scan log; one row per scan attempt
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS scan_events (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        user_id VARCHAR(128),
                        scan_type VARCHAR(10) NOT NULL CHECK (scan_type IN ('entry', 'exit')),
                        scanned_at TIMESTAMP NOT NULL,
                        scanned_by VARCHAR(128) NOT NULL,
                        location VARCHAR(100) NOT NULL,
                        outcome VARCHAR(10) NOT NULL CHECK (outcome IN ('granted', 'denied')),
                        denial_reason VARCHAR(50),
                        nonce VARCHAR(64),
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                # Subscriptions mirrored from the membership system
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS subscriptions (
                        user_id VARCHAR(128) PRIMARY KEY,
                        status VARCHAR(20) NOT NULL CHECK (status IN ('active', 'expired', 'inactive')),
                        valid_until TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                # Create indexes for better performance
                cursor.execute("""
                    CREATE INDEX IF NOT EXISTS idx_scan_events_user
                    ON scan_events(user_id, scanned_at DESC, id DESC)
                """)
                cursor.execute("""
                    CREATE INDEX IF NOT EXISTS idx_scan_events_time
                    ON scan_events(scanned_at DESC)
                """)

                # A nonce can back at most one grant
                cursor.execute("""
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_scan_events_granted_nonce
                    ON scan_events(user_id, nonce)
                    WHERE outcome = 'granted' AND nonce IS NOT NULL
                """)

                cursor.execute("""
                    CREATE TRIGGER IF NOT EXISTS scan_events_no_update
                    BEFORE UPDATE ON scan_events
                    BEGIN
                        SELECT RAISE(ABORT, 'scan_events is append-only');
                    END
                """)
                cursor.execute("""
                    CREATE TRIGGER IF NOT EXISTS scan_events_no_delete
                    BEFORE DELETE ON scan_events
                    BEGIN
                        SELECT RAISE(ABORT, 'scan_events is append-only');
                    END
                """)

            self.logger.info("Database initialized successfully")

        except Exception as e:
            self.logger.error(f"Failed to initialize database: {str(e)}")
            raise

    def execute_query(self, query, params=None, fetch_all=True):
        """
        Execute a SELECT query and return results.

        Args:
            query (str): SQL query string
            params (tuple): Query parameters
            fetch_all (bool): Whether to fetch all results or just one

        Returns:
            list or dict: Query results
        """
        try:
            with self.get_connection() as conn:
                cursor = conn.execute(query, params or ())

                if fetch_all:
                    return [dict(row) for row in cursor.fetchall()]

                result = cursor.fetchone()
                return dict(result) if result else None

        except Exception as e:
            self.logger.error(f"Query execution failed: {str(e)}")
            raise

    def execute_update(self, query, params=None):
        """
        Execute an INSERT, UPDATE, or DELETE query in its own transaction.

        Args:
            query (str): SQL query string
            params (tuple): Query parameters

        Returns:
            int: Last inserted row ID for INSERT, affected rows otherwise
        """
        try:
            with self.transaction() as conn:
                cursor = conn.execute(query, params or ())

                if query.strip().upper().startswith('INSERT'):
                    return cursor.lastrowid
                return cursor.rowcount

        except Exception as e:
            self.logger.error(f"Update execution failed: {str(e)}")
            raise

    @contextmanager
    def transaction(self, immediate: bool = False, timeout: Optional[float] = None):
        """
        Context manager for database transactions with automatic rollback on error.

        Args:
            immediate (bool): Take the write lock up front (BEGIN IMMEDIATE),
                making read-check-write sequences atomic across connections
            timeout (float): Seconds to wait for the lock, overriding the default

        Yields:
            sqlite3.Connection: Database connection within transaction
        """
        with self.get_connection() as conn:
            if timeout is not None:
                conn.execute(f"PRAGMA busy_timeout = {max(int(timeout * 1000), 0)}")
            try:
                conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
                try:
                    yield conn
                    conn.execute("COMMIT")
                except Exception as e:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    self.logger.debug(f"Transaction rolled back: {str(e)}")
                    raise
            finally:
                if timeout is not None:
                    conn.execute(f"PRAGMA busy_timeout = {int(self.timeout * 1000)}")

    def close_all_connections(self):
        """Close the calling thread's database connection."""
        try:
            if hasattr(self._local, 'connection'):
                self._local.connection.close()
                del self._local.connection
        except Exception as e:
            self.logger.error(f"Error closing connections: {str(e)}")
