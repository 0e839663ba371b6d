"""
Destination schema models for shadowrepl
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from ..exceptions import MappingNotFoundError


@dataclass(frozen=True)
class ColumnDefinition:
    """Destination column definition"""
    name: str
    data_type: str
    nullable: bool = True
    column_type: Optional[str] = None

    @property
    def ddl_type(self) -> str:
        """Full type usable in CREATE TABLE (e.g. 'varchar(10)')"""
        return self.column_type or self.data_type


@dataclass
class TableDefinition:
    """Destination table definition"""
    name: str
    columns: List[ColumnDefinition]
    primary_key: List[str] = field(default_factory=list)

    def __post_init__(self):
        self._by_name: Dict[str, ColumnDefinition] = {column.name: column for column in self.columns}

    def column(self, name: str) -> Optional[ColumnDefinition]:
        return self._by_name.get(name)

    def has_column(self, name: str) -> bool:
        return name in self._by_name

    @property
    def column_names(self) -> List[str]:
        return [column.name for column in self.columns]

    def key_definitions(self) -> List[ColumnDefinition]:
        return [self._by_name[name] for name in self.primary_key]


@dataclass
class DestinationSchema:
    """Snapshot of the destination's data table definitions"""
    tables: Dict[str, TableDefinition] = field(default_factory=dict)

    @classmethod
    def from_tables(cls, tables: List[TableDefinition]) -> 'DestinationSchema':
        return cls(tables={table.name: table for table in tables})

    def table(self, name: str) -> TableDefinition:
        if name not in self.tables:
            raise MappingNotFoundError(f"Table '{name}' not found in destination schema")
        return self.tables[name]

    def has_table(self, name: str) -> bool:
        return name in self.tables

    @property
    def table_names(self) -> List[str]:
        return list(self.tables.keys())


@dataclass(frozen=True)
class ColumnPair:
    """Source column resolved onto its destination column"""
    source_column: str
    destination_column: str
    destination_type: str


@dataclass(frozen=True)
class SchemaMapping:
    """Resolved mapping of one source table onto one destination table"""
    source_table: str
    destination_table: str
    columns: Tuple[ColumnPair, ...]
    primary_key: Tuple[str, ...]
    shard_key_column: Optional[str] = None
