"""
Shared fixtures: an in-memory destination that understands the statements
produced by SQLBuilder, so the ordering protocol runs end to end without MySQL.
"""

import copy
import re
import threading
from contextlib import contextmanager

import pymysql.err
import pytest

from shadowrepl.models.config import MigrationConfig
from shadowrepl.models.schema import ColumnDefinition, TableDefinition, DestinationSchema
from shadowrepl.services.metrics_service import MetricsService


_IDENTIFIER = re.compile(r"`([^`]+)`")
_INSERT = re.compile(r"^INSERT INTO (?P<table>\S+) \((?P<columns>[^)]*)\) VALUES")
_DELETE = re.compile(r"^DELETE FROM (?P<table>\S+) WHERE (?P<where>.+)$")
_SELECT = re.compile(r"^SELECT (?P<columns>.+) FROM (?P<table>\S+) WHERE (?P<where>.+) FOR UPDATE$")
_CREATE = re.compile(r"^CREATE TABLE IF NOT EXISTS (?P<table>\S+) \(")
_UPSERT_CLAUSE = " ON DUPLICATE KEY UPDATE "
_MISSING = object()


def _table_name(reference):
    return _IDENTIFIER.findall(reference)[-1]


class FakeCursor:
    """Cursor executing SQLBuilder statements against FakeDestination state"""

    def __init__(self, destination):
        self.destination = destination
        self._result = []
        self.rowcount = 0

    def execute(self, sql, values=None):
        values = list(values or [])
        self.destination.statements.append(sql)
        self.destination.maybe_fail(sql)

        match = _SELECT.match(sql)
        if match:
            table = _table_name(match.group('table'))
            columns = _IDENTIFIER.findall(match.group('columns'))
            key = tuple(values)
            row = self.destination.tables.get(table, {}).get(key)
            self._result = [tuple(row[column] for column in columns)] if row else []
            self.rowcount = len(self._result)
            return self.rowcount

        match = _INSERT.match(sql)
        if match:
            table = _table_name(match.group('table'))
            columns = _IDENTIFIER.findall(match.group('columns'))
            row = dict(zip(columns, values))
            key = tuple(row[column] for column in self.destination.key_columns(table))
            rows = self.destination.tables.setdefault(table, {})
            if key in rows and _UPSERT_CLAUSE not in sql:
                raise pymysql.err.IntegrityError(1062, f"Duplicate entry '{key}' for key 'PRIMARY'")
            self.destination.remember(table, key)
            if key in rows:
                rows[key].update(row)
                self.rowcount = 2
            else:
                rows[key] = row
                self.rowcount = 1
            return self.rowcount

        match = _DELETE.match(sql)
        if match:
            table = _table_name(match.group('table'))
            key = tuple(values)
            self.destination.remember(table, key)
            self.rowcount = 1 if self.destination.tables.get(table, {}).pop(key, None) is not None else 0
            return self.rowcount

        match = _CREATE.match(sql)
        if match:
            table = _table_name(match.group('table'))
            self.destination.created_tables.append(table)
            self.destination.remember(table)
            self.destination.tables.setdefault(table, {})
            self.rowcount = 0
            return 0

        raise AssertionError(f"Unexpected statement: {sql}")

    def fetchone(self):
        return self._result[0] if self._result else None

    def fetchall(self):
        return list(self._result)

    def close(self):
        pass


class FakeDestination:
    """Stands in for DatabaseService.

    Transactions are serialized by one reentrant lock. A transaction opened
    while another is in progress on the same thread commits on its own, which
    lets a test slip a rival write between the steps of an outer one. Each
    transaction keeps an undo log, so a rollback reverts only its own changes.
    """

    def __init__(self, schema, shadow_prefix="shadow_"):
        self.schema = schema
        self.shadow_prefix = shadow_prefix
        self.tables = {}
        self.statements = []
        self.created_tables = []
        self.commits = 0
        self.rollbacks = 0
        self._failures = []
        self._undo_logs = []
        self._lock = threading.RLock()

    def key_columns(self, table):
        if table.startswith(self.shadow_prefix) and not self.schema.has_table(table):
            table = table[len(self.shadow_prefix):]
        return self.schema.table(table).primary_key

    def fail_on(self, statement_prefix, error, times=1):
        """Raise ``error`` on the next ``times`` statements starting with the prefix"""
        self._failures.append([statement_prefix, error, times])

    def maybe_fail(self, sql):
        for failure in self._failures:
            prefix, error, remaining = failure
            if remaining > 0 and sql.startswith(prefix):
                failure[2] -= 1
                raise error

    def row(self, table, *key):
        return self.tables.get(table, {}).get(tuple(key))

    def shadow_row(self, table, *key):
        return self.row(self.shadow_prefix + table, *key)

    def remember(self, table, key=_MISSING):
        """Record the prior state of a row, or of a whole table, for rollback"""
        if not self._undo_logs:
            return
        if key is _MISSING:
            previous = copy.deepcopy(self.tables[table]) if table in self.tables else _MISSING
        else:
            row = self.tables.get(table, {}).get(key)
            previous = dict(row) if row is not None else _MISSING
        self._undo_logs[-1].append((table, key, previous))

    def _undo(self, undo_log):
        for table, key, previous in reversed(undo_log):
            if key is _MISSING:
                if previous is _MISSING:
                    self.tables.pop(table, None)
                else:
                    self.tables[table] = previous
            elif previous is _MISSING:
                self.tables.get(table, {}).pop(key, None)
            else:
                self.tables.setdefault(table, {})[key] = previous

    @contextmanager
    def transaction(self, name="transaction"):
        with self._lock:
            undo_log = []
            self._undo_logs.append(undo_log)
            try:
                yield FakeCursor(self)
                self.commits += 1
            except BaseException:
                self._undo(undo_log)
                self.rollbacks += 1
                raise
            finally:
                self._undo_logs.pop()

    def execute_update(self, sql, values=None):
        with self.transaction("update") as cursor:
            return cursor.execute(sql, values)

    def read_destination_schema(self, database, exclude_prefix=None):
        return self.schema

    def test_connection(self):
        return True

    def close_all_connections(self):
        pass


def make_table(name, columns, primary_key):
    return TableDefinition(
        name=name,
        columns=[ColumnDefinition(name=column, data_type=data_type) for column, data_type in columns],
        primary_key=list(primary_key)
    )


@pytest.fixture
def destination_schema():
    return DestinationSchema.from_tables([
        make_table("cart", [("id", "bigint"), ("name", "varchar"), ("qty", "int")], ["id"]),
        make_table("orders", [
            ("id", "bigint"),
            ("customer", "varchar"),
            ("total", "decimal"),
            ("details", "json"),
            ("created_at", "datetime"),
        ], ["id"]),
        make_table("dest", [("id", "int"), ("label", "varchar")], ["id"]),
    ])


@pytest.fixture
def fake_destination(destination_schema):
    return FakeDestination(destination_schema)


@pytest.fixture
def metrics_service():
    return MetricsService()


@pytest.fixture
def config_dict(tmp_path):
    return {
        "destination": {
            "host": "localhost",
            "port": 3306,
            "user": "migrator",
            "password": "secret",
            "database": "shop"
        },
        "workers": 2,
        "dlq": {
            "directory": str(tmp_path / "dlq"),
            "max_retry_count": 3,
            "retry_interval_minutes": 1
        },
        "filtered_events_directory": str(tmp_path / "filtered")
    }


@pytest.fixture
def migration_config(config_dict):
    return MigrationConfig.from_dict(config_dict)


@pytest.fixture
def table_factory():
    return make_table


SESSION_DOCUMENT = {
    "SrcSchema": {
        "t1": {
            "Name": "cart",
            "ColDefs": {
                "c1": {"Name": "id"},
                "c2": {"Name": "name"},
                "c3": {"Name": "legacy_flag"}
            }
        },
        "t2": {
            "Name": "audit_log",
            "ColDefs": {"c1": {"Name": "message"}}
        },
        "t3": {
            "Name": "events",
            "ColDefs": {"c1": {"Name": "payload"}}
        }
    },
    "SpSchema": {
        "t1": {
            "Name": "cart",
            "ColDefs": {
                "c1": {"Name": "id", "T": {"Name": "INT64"}},
                "c2": {"Name": "name", "T": {"Name": "STRING"}},
                "c9": {"Name": "migration_shard_id", "T": {"Name": "STRING"}}
            },
            "ShardIdColumn": "c9"
        },
        "t3": {
            "Name": "events",
            "ColDefs": {
                "c1": {"Name": "payload", "T": {"Name": "JSON"}},
                "c5": {"Name": "synth_id", "T": {"Name": "STRING"}}
            }
        }
    },
    "SyntheticPKeys": {
        "t3": {"ColId": "c5", "Sequence": 0}
    }
}


@pytest.fixture
def session_document():
    return copy.deepcopy(SESSION_DOCUMENT)


@pytest.fixture
def session_schema():
    return DestinationSchema.from_tables([
        make_table("cart", [("id", "bigint"), ("name", "varchar"), ("migration_shard_id", "varchar")],
                   ["migration_shard_id", "id"]),
        make_table("events", [("payload", "json"), ("synth_id", "varchar")], ["synth_id"]),
    ])
