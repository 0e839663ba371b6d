"""
Shadow table management for shadowrepl
"""

from typing import List

import structlog

from ..exceptions import ConfigurationError
from ..models.schema import DestinationSchema, TableDefinition
from ..utils.sql_builder import SQLBuilder, SHADOW_METADATA_COLUMNS, qualified_name
from .database_service import DatabaseService


class ShadowTableManager:
    """Names and creates the per-table shadow tables"""

    def __init__(self, database_service: DatabaseService, prefix: str, shadow_database: str = None):
        self.database_service = database_service
        self.prefix = prefix
        self.shadow_database = shadow_database
        self.logger = structlog.get_logger()

    def shadow_table_name(self, table_name: str) -> str:
        return f"{self.prefix}{table_name}"

    def qualified_shadow_table(self, table_name: str) -> str:
        """Quoted shadow table reference usable in statements"""
        return qualified_name(self.shadow_database, self.shadow_table_name(table_name))

    def ensure_shadow_tables(self, schema: DestinationSchema) -> List[str]:
        """Create missing shadow tables for every data table of ``schema``.

        Returns the names of the shadow tables that were (re)declared. Tables
        without a primary key cannot be ordered and are skipped with a warning.
        """
        created = []
        for table in schema.tables.values():
            if table.name.startswith(self.prefix):
                continue
            if not table.primary_key:
                self.logger.warning("Skipping shadow table for table without primary key", table=table.name)
                continue
            self._check_metadata_conflicts(table)

            sql = SQLBuilder.build_create_shadow_table_sql(
                self.qualified_shadow_table(table.name), table.key_definitions())
            self.database_service.execute_update(sql)
            created.append(self.shadow_table_name(table.name))

        self.logger.info("Shadow tables ensured",
                         count=len(created),
                         prefix=self.prefix,
                         database=self.shadow_database)
        return created

    @staticmethod
    def _check_metadata_conflicts(table: TableDefinition) -> None:
        conflicts = [column for column in table.primary_key if column in SHADOW_METADATA_COLUMNS]
        if conflicts:
            raise ConfigurationError(
                f"Primary key columns {conflicts} of table '{table.name}' clash with shadow table columns")
