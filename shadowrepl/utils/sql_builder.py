"""
SQL builder utilities for shadowrepl
"""

from typing import Dict, Any, List, Sequence, Tuple

from ..models.events import OrderingToken, OperationKind
from ..models.schema import ColumnDefinition


SHADOW_TIMESTAMP_COLUMN = "processed_commit_ts"
SHADOW_LOG_FILE_COLUMN = "log_file"
SHADOW_LOG_POSITION_COLUMN = "log_position"
SHADOW_OPERATION_COLUMN = "last_operation"

SHADOW_METADATA_COLUMNS = (
    SHADOW_TIMESTAMP_COLUMN,
    SHADOW_LOG_FILE_COLUMN,
    SHADOW_LOG_POSITION_COLUMN,
    SHADOW_OPERATION_COLUMN,
)


def quote_identifier(name: str) -> str:
    """Quote a MySQL identifier with backticks"""
    return "`" + name.replace("`", "``") + "`"


def qualified_name(database: str, table: str) -> str:
    """Build a `database`.`table` reference, or just `table` without database"""
    if database:
        return f"{quote_identifier(database)}.{quote_identifier(table)}"
    return quote_identifier(table)


class SQLBuilder:
    """Utility class for building SQL statements"""

    @staticmethod
    def build_upsert_sql(table_name: str, data: Dict[str, Any], key_columns: Sequence[str]) -> Tuple[str, List[Any]]:
        """
        Build UPSERT SQL statement (INSERT ... ON DUPLICATE KEY UPDATE)

        Args:
            table_name: Already quoted/qualified target table name
            data: Data dictionary with column names and values
            key_columns: Primary key column names

        Returns:
            Tuple of (SQL statement, values list)
        """
        if not data:
            raise ValueError("Data cannot be empty")

        columns = list(data.keys())
        quoted = [quote_identifier(col) for col in columns]
        placeholders = ['%s'] * len(columns)

        update_parts = [
            f"{quote_identifier(col)} = VALUES({quote_identifier(col)})"
            for col in columns if col not in key_columns
        ]
        if not update_parts:
            # Key-only row: a no-op update keeps the statement valid
            first_key = quote_identifier(key_columns[0] if key_columns else columns[0])
            update_parts = [f"{first_key} = {first_key}"]

        sql = (
            f"INSERT INTO {table_name} ({', '.join(quoted)}) "
            f"VALUES ({', '.join(placeholders)}) "
            f"ON DUPLICATE KEY UPDATE {', '.join(update_parts)}"
        )
        return sql, list(data.values())

    @staticmethod
    def build_insert_sql(table_name: str, data: Dict[str, Any]) -> Tuple[str, List[Any]]:
        """Build a plain INSERT that fails with a duplicate-key error when the row exists"""
        if not data:
            raise ValueError("Data cannot be empty")

        columns = ', '.join(quote_identifier(col) for col in data)
        placeholders = ', '.join(['%s'] * len(data))
        return f"INSERT INTO {table_name} ({columns}) VALUES ({placeholders})", list(data.values())

    @staticmethod
    def build_delete_sql(table_name: str, key: Dict[str, Any]) -> Tuple[str, List[Any]]:
        """
        Build DELETE SQL statement for one row

        Args:
            table_name: Already quoted/qualified target table name
            key: Primary key column names and values

        Returns:
            Tuple of (SQL statement, values list)
        """
        if not key:
            raise ValueError("Key cannot be empty")
        where, values = SQLBuilder._build_key_condition(key)
        return f"DELETE FROM {table_name} WHERE {where}", values

    @staticmethod
    def build_select_shadow_sql(shadow_table: str, key: Dict[str, Any]) -> Tuple[str, List[Any]]:
        """
        Build the locking read of a shadow record

        ``FOR UPDATE`` takes the row lock so concurrent writers of an existing
        key serialize. A key without a shadow record is claimed afterwards
        with build_shadow_insert_sql.
        """
        if not key:
            raise ValueError("Key cannot be empty")
        where, values = SQLBuilder._build_key_condition(key)
        columns = ', '.join(quote_identifier(col) for col in SHADOW_METADATA_COLUMNS)
        return f"SELECT {columns} FROM {shadow_table} WHERE {where} FOR UPDATE", values

    @staticmethod
    def _shadow_row(key: Dict[str, Any], token: OrderingToken, operation: OperationKind) -> Dict[str, Any]:
        data = dict(key)
        data[SHADOW_TIMESTAMP_COLUMN] = token.timestamp
        data[SHADOW_LOG_FILE_COLUMN] = token.log_file
        data[SHADOW_LOG_POSITION_COLUMN] = token.log_position
        data[SHADOW_OPERATION_COLUMN] = operation.value
        return data

    @staticmethod
    def build_shadow_insert_sql(shadow_table: str, key: Dict[str, Any], token: OrderingToken,
                                operation: OperationKind) -> Tuple[str, List[Any]]:
        """
        Build the insert claiming a key that has no shadow record yet

        A concurrent first write of the same key makes this fail with a
        duplicate-key error instead of silently overwriting a newer token.
        """
        return SQLBuilder.build_insert_sql(shadow_table, SQLBuilder._shadow_row(key, token, operation))

    @staticmethod
    def build_shadow_upsert_sql(shadow_table: str, key: Dict[str, Any], token: OrderingToken,
                                operation: OperationKind) -> Tuple[str, List[Any]]:
        """Build the upsert recording ``token`` as the last applied change of ``key``"""
        data = SQLBuilder._shadow_row(key, token, operation)
        return SQLBuilder.build_upsert_sql(shadow_table, data, list(key.keys()))

    @staticmethod
    def build_create_shadow_table_sql(shadow_table: str, key_columns: Sequence[ColumnDefinition]) -> str:
        """
        Build CREATE TABLE for a shadow table

        The shadow table repeats the data table's primary key and adds the
        ordering token and last operation columns.
        """
        if not key_columns:
            raise ValueError("Shadow table requires at least one key column")

        definitions = [
            f"{quote_identifier(column.name)} {column.ddl_type} NOT NULL"
            for column in key_columns
        ]
        definitions.extend([
            f"{quote_identifier(SHADOW_TIMESTAMP_COLUMN)} BIGINT NOT NULL",
            f"{quote_identifier(SHADOW_LOG_FILE_COLUMN)} VARCHAR(255) NOT NULL DEFAULT ''",
            f"{quote_identifier(SHADOW_LOG_POSITION_COLUMN)} BIGINT NOT NULL DEFAULT 0",
            f"{quote_identifier(SHADOW_OPERATION_COLUMN)} VARCHAR(16) NOT NULL",
        ])
        primary_key = ', '.join(quote_identifier(column.name) for column in key_columns)
        definitions.append(f"PRIMARY KEY ({primary_key})")

        return (
            f"CREATE TABLE IF NOT EXISTS {shadow_table} (\n  "
            + ",\n  ".join(definitions)
            + "\n) ENGINE=InnoDB"
        )

    @staticmethod
    def _build_key_condition(key: Dict[str, Any]) -> Tuple[str, List[Any]]:
        parts = [f"{quote_identifier(col)} = %s" for col in key.keys()]
        return ' AND '.join(parts), list(key.values())
