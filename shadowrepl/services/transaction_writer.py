"""
Ordered writes for shadowrepl

Every mutation is applied in its own destination transaction that first locks
the row's shadow record and compares ordering tokens. A key seen for the first
time is claimed by inserting its shadow record before the data row is touched,
so two concurrent first writes cannot both pass the comparison. Redelivered
and late events are discarded, so any arrival order of the same set of events
leaves the same final state.
"""

import time
from typing import Optional, Sequence

import pymysql
import pymysql.err
import structlog

from ..exceptions import (
    ConnectionError,
    WriteError,
    TransientWriteError,
    PermanentWriteError
)
from ..models.events import Mutation, OperationKind, OrderingToken, ShadowRecord
from ..models.writes import WriteResult, WriteStatus
from ..utils.sql_builder import SQLBuilder, qualified_name
from .database_service import DatabaseService
from .metrics_service import MetricsService
from .shadow_table_service import ShadowTableManager


DUPLICATE_ENTRY = 1062

# MySQL error codes worth retrying later
RETRYABLE_ERROR_CODES = {
    1040,  # too many connections
    1205,  # lock wait timeout
    1213,  # deadlock
    1317,  # query interrupted
    2003,  # can't connect
    2006,  # server has gone away
    2013,  # lost connection during query
    3024,  # max execution time exceeded
}

# MySQL error codes that will fail the same way on every attempt
PERMANENT_ERROR_CODES = {
    1048,  # column cannot be null
    1054,  # unknown column
    1062,  # duplicate entry
    1146,  # table doesn't exist
    1264,  # out of range value
    1292,  # incorrect datetime/truncated value
    1366,  # incorrect value for column
    1406,  # data too long
    1451,  # foreign key: parent row referenced
    1452,  # foreign key: parent row missing
}


def error_code_of(error: BaseException) -> Optional[int]:
    if isinstance(error, pymysql.Error) and error.args and isinstance(error.args[0], int):
        return error.args[0]
    return None


def classify_write_error(error: BaseException) -> WriteError:
    """Map a destination failure onto a retryable or permanent WriteError"""
    if isinstance(error, WriteError):
        return error

    code = error_code_of(error)
    message = str(error)
    if code in RETRYABLE_ERROR_CODES:
        return TransientWriteError(message, code)
    if code in PERMANENT_ERROR_CODES:
        return PermanentWriteError(message, code)
    if isinstance(error, (pymysql.err.OperationalError, pymysql.err.InterfaceError, ConnectionError)):
        return TransientWriteError(message, code)
    return PermanentWriteError(message, code)


class OrderingGuard:
    """Accept a change only if it is strictly newer than the last applied one"""

    def should_apply(self, incoming: OrderingToken, stored: Optional[ShadowRecord]) -> bool:
        if stored is None:
            return True
        return incoming > stored.token


class TransactionalWriter:
    """Applies mutations through the shadow-table ordering protocol"""

    def __init__(self, database_service: DatabaseService, shadow_tables: ShadowTableManager,
                 data_database: str = None, guard: OrderingGuard = None,
                 metrics_service: Optional[MetricsService] = None):
        self.database_service = database_service
        self.shadow_tables = shadow_tables
        self.data_database = data_database
        self.guard = guard or OrderingGuard()
        self.metrics_service = metrics_service
        self.logger = structlog.get_logger()

    def write(self, mutation: Mutation) -> WriteResult:
        """Apply one mutation; never raises for destination errors"""
        start_time = time.time()
        try:
            with self.database_service.transaction(f"write:{mutation.table}") as cursor:
                applied = self._apply(cursor, mutation)
        except Exception as e:
            error = classify_write_error(e)
            status = WriteStatus.RETRYABLE_ERROR if error.retryable else WriteStatus.PERMANENT_ERROR
            self.logger.warning("Ordered write failed",
                                table=mutation.table,
                                key=mutation.key_values,
                                event_id=mutation.event.event_id,
                                retryable=error.retryable,
                                error_code=error.error_code,
                                error=str(error))
            return WriteResult(status=status, mutation=mutation, error=str(error), error_code=error.error_code)
        finally:
            if self.metrics_service:
                self.metrics_service.record_write_duration(mutation.table, time.time() - start_time)

        if not applied:
            self.logger.debug("Discarded stale change",
                              table=mutation.table,
                              key=mutation.key_values,
                              token=mutation.token.to_dict())
            return WriteResult(status=WriteStatus.DISCARDED, mutation=mutation)
        return WriteResult(status=WriteStatus.APPLIED, mutation=mutation)

    def _apply(self, cursor, mutation: Mutation) -> bool:
        key = dict(mutation.key)
        shadow_table = self.shadow_tables.qualified_shadow_table(mutation.table)

        sql, values = SQLBuilder.build_select_shadow_sql(shadow_table, key)
        cursor.execute(sql, values)
        stored = self._to_shadow_record(mutation.key_values, cursor.fetchone())

        if not self.guard.should_apply(mutation.token, stored):
            return False

        if stored is None:
            # No row to lock yet: claim the key before touching the data row
            self._claim_key(cursor, shadow_table, key, mutation)

        data_table = qualified_name(self.data_database, mutation.table)
        if mutation.is_delete:
            sql, values = SQLBuilder.build_delete_sql(data_table, key)
        else:
            sql, values = SQLBuilder.build_upsert_sql(data_table, mutation.values, mutation.key_columns)
        cursor.execute(sql, values)

        if stored is not None:
            sql, values = SQLBuilder.build_shadow_upsert_sql(shadow_table, key, mutation.token, mutation.operation)
            cursor.execute(sql, values)
        return True

    def _claim_key(self, cursor, shadow_table: str, key: dict, mutation: Mutation) -> None:
        sql, values = SQLBuilder.build_shadow_insert_sql(shadow_table, key, mutation.token, mutation.operation)
        try:
            cursor.execute(sql, values)
        except pymysql.err.IntegrityError as e:
            if error_code_of(e) != DUPLICATE_ENTRY:
                raise
            raise TransientWriteError(
                f"Key {list(mutation.key_values)} was first written concurrently: {e}", DUPLICATE_ENTRY
            ) from e

    @staticmethod
    def _to_shadow_record(key_values: Sequence, row) -> Optional[ShadowRecord]:
        if row is None:
            return None
        timestamp, log_file, log_position, last_operation = row
        return ShadowRecord(
            key=tuple(key_values),
            token=OrderingToken(
                timestamp=int(timestamp),
                log_file=log_file or "",
                log_position=int(log_position or 0)
            ),
            operation=OperationKind.parse(last_operation) if last_operation else None
        )
