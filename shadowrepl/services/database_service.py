"""
Database service for shadowrepl

Each worker thread gets its own destination connection; transactions never
share a connection across threads.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Any, List, Optional, Tuple

import pymysql
import pymysql.err
import structlog

from ..exceptions import ConnectionError
from ..models.config import DatabaseConfig
from ..models.schema import ColumnDefinition, TableDefinition, DestinationSchema
from ..utils.retry import retry_on_connection_error


# Connection-level errors after which a connection is not reused
CONNECTION_LOST_CODES = {2006, 2013, 2014, 2055}

COLUMNS_QUERY = (
    "SELECT TABLE_NAME, COLUMN_NAME, DATA_TYPE, COLUMN_TYPE, IS_NULLABLE "
    "FROM information_schema.COLUMNS WHERE TABLE_SCHEMA = %s "
    "ORDER BY TABLE_NAME, ORDINAL_POSITION"
)

PRIMARY_KEY_QUERY = (
    "SELECT TABLE_NAME, COLUMN_NAME "
    "FROM information_schema.KEY_COLUMN_USAGE "
    "WHERE TABLE_SCHEMA = %s AND CONSTRAINT_NAME = 'PRIMARY' "
    "ORDER BY TABLE_NAME, ORDINAL_POSITION"
)


class DatabaseService:
    """Service for destination database operations"""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self._local = threading.local()
        self._connections: List[pymysql.Connection] = []
        self._connection_lock = threading.RLock()
        self.logger = structlog.get_logger()

    @retry_on_connection_error(max_attempts=3, base_delay=1.0)
    def connect(self) -> pymysql.Connection:
        """Open a new connection for the calling thread"""
        try:
            connection_params = self.config.to_connection_params()
            connection_params.update({
                'use_unicode': True,
                'sql_mode': 'TRADITIONAL',
                'init_command': "SET SESSION TRANSACTION ISOLATION LEVEL REPEATABLE READ"
            })
            connection = pymysql.connect(**connection_params)
        except pymysql.Error as e:
            raise ConnectionError(f"Failed to connect to database: {e}")

        with self._connection_lock:
            self._connections.append(connection)
        self._local.connection = connection
        self.logger.debug("Opened destination connection",
                          host=self.config.host,
                          database=self.config.database,
                          thread=threading.current_thread().name)
        return connection

    def get_connection(self) -> pymysql.Connection:
        """Connection bound to the calling thread, opened on first use"""
        connection = getattr(self._local, 'connection', None)
        if connection is None or not getattr(connection, 'open', False):
            if connection is not None:
                self._discard(connection)
            connection = self.connect()
        return connection

    @contextmanager
    def get_cursor(self):
        """Get database cursor with automatic cleanup"""
        connection = self.get_connection()
        cursor = connection.cursor()
        try:
            yield cursor
        except pymysql.err.OperationalError as e:
            if e.args and e.args[0] in CONNECTION_LOST_CODES:
                self.reset_connection()
            raise
        finally:
            try:
                cursor.close()
            except pymysql.Error as e:
                self.logger.debug("Error closing cursor", error=str(e))

    @contextmanager
    def transaction(self, name: str = "transaction"):
        """Run a block in one destination transaction.

        Commits when the block completes and rolls back on any exception,
        which is re-raised unchanged.
        """
        connection = self.get_connection()
        connection.begin()
        cursor = connection.cursor()
        try:
            yield cursor
            connection.commit()
        except BaseException as e:
            self._rollback(connection, name)
            if isinstance(e, (pymysql.err.OperationalError, pymysql.err.InterfaceError)):
                code = e.args[0] if e.args else None
                if code in CONNECTION_LOST_CODES or isinstance(e, pymysql.err.InterfaceError):
                    self.reset_connection()
            raise
        finally:
            try:
                cursor.close()
            except pymysql.Error as e:
                self.logger.debug("Error closing cursor", transaction=name, error=str(e))

    def _rollback(self, connection: pymysql.Connection, name: str) -> None:
        try:
            connection.rollback()
        except pymysql.Error as e:
            self.logger.warning("Rollback failed, resetting connection", transaction=name, error=str(e))
            self.reset_connection()

    def execute_query(self, sql: str, values: Tuple = None) -> Any:
        """Execute query and return result"""
        with self.get_cursor() as cursor:
            cursor.execute(sql, values)
            return cursor.fetchall()

    def execute_update(self, sql: str, values: Tuple = None) -> int:
        """Execute update query and return affected rows"""
        connection = self.get_connection()
        with self.get_cursor() as cursor:
            cursor.execute(sql, values)
            connection.commit()
            return cursor.rowcount

    def read_destination_schema(self, database: str, exclude_prefix: Optional[str] = None) -> DestinationSchema:
        """Read table definitions of ``database`` from information_schema.

        Tables whose name starts with ``exclude_prefix`` (shadow tables living
        next to the data tables) are skipped.
        """
        columns: Dict[str, List[ColumnDefinition]] = {}
        for table_name, column_name, data_type, column_type, is_nullable in self.execute_query(
                COLUMNS_QUERY, (database,)):
            if exclude_prefix and table_name.startswith(exclude_prefix):
                continue
            columns.setdefault(table_name, []).append(ColumnDefinition(
                name=column_name,
                data_type=str(data_type).lower(),
                nullable=str(is_nullable).upper() == 'YES',
                column_type=column_type
            ))

        primary_keys: Dict[str, List[str]] = {}
        for table_name, column_name in self.execute_query(PRIMARY_KEY_QUERY, (database,)):
            primary_keys.setdefault(table_name, []).append(column_name)

        tables = [
            TableDefinition(name=name, columns=table_columns, primary_key=primary_keys.get(name, []))
            for name, table_columns in columns.items()
        ]
        self.logger.info("Read destination schema", database=database, tables=len(tables))
        return DestinationSchema.from_tables(tables)

    def is_connected(self) -> bool:
        """Check if the calling thread's connection is active"""
        connection = getattr(self._local, 'connection', None)
        if connection is None:
            return False
        try:
            connection.ping(reconnect=False)
            return True
        except (pymysql.Error, OSError) as e:
            self.logger.debug("Destination connection is not usable", error=str(e))
            return False

    def test_connection(self) -> bool:
        """Test database connection"""
        try:
            result = self.execute_query("SELECT 1")
            return bool(result) and result[0][0] == 1
        except (ConnectionError, pymysql.Error) as e:
            self.logger.error("Destination connection test failed", error=str(e))
            return False

    def reset_connection(self) -> None:
        """Drop the calling thread's connection; the next use reconnects"""
        connection = getattr(self._local, 'connection', None)
        self._local.connection = None
        if connection is not None:
            self._discard(connection)

    def _discard(self, connection: pymysql.Connection) -> None:
        with self._connection_lock:
            if connection in self._connections:
                self._connections.remove(connection)
        try:
            connection.close()
        except (pymysql.Error, OSError) as e:
            self.logger.debug("Error closing connection (expected during cleanup)", error=str(e))

    def close_all_connections(self) -> None:
        """Close every connection opened by any thread"""
        with self._connection_lock:
            connections = list(self._connections)
            self._connections.clear()
        for connection in connections:
            try:
                connection.close()
            except (pymysql.Error, OSError) as e:
                self.logger.debug("Error closing connection (expected during cleanup)", error=str(e))
        self._local = threading.local()
