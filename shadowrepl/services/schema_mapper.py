"""
Schema mapping for shadowrepl

Maps source table and column names onto destination names. Exactly one
strategy is selected at startup by ``build_schema_mapper``:

* identity   - names pass through unchanged
* session    - a schema-discovery session file describes both schemas
* overrides  - renames loaded from a file or from inline override strings

Every strategy exposes the same interface; nothing downstream inspects which
one is in use.
"""

import json
import re
import threading
import uuid
from typing import Dict, Any, List, Optional, Tuple

import structlog

from ..exceptions import ConfigurationError, MappingNotFoundError
from ..models.config import MULTIPLE_OVERRIDES_MESSAGE, SchemaOverridesConfig
from ..models.schema import DestinationSchema, TableDefinition, ColumnPair, SchemaMapping
from .config_service import load_structured_file


_OVERRIDE_PAIR = re.compile(r"\{\s*([^{},\s]+)\s*,\s*([^{},\s]+)\s*\}")


class SchemaMapper:
    """Base mapper: identity behaviour on top of the destination schema"""

    name = "base"

    def __init__(self, destination_schema: DestinationSchema):
        self.destination_schema = destination_schema
        self._resolved: Dict[str, SchemaMapping] = {}
        self._resolved_lock = threading.Lock()
        self.logger = structlog.get_logger()

    # Name mapping, overridden per strategy

    def map_table(self, source_table: str) -> str:
        return source_table

    def map_column(self, source_table: str, source_column: str) -> Optional[str]:
        return source_column

    def source_table_name(self, destination_table: str) -> str:
        return destination_table

    def source_column_name(self, destination_table: str, destination_column: str) -> Optional[str]:
        return destination_column

    def shard_key_column(self, destination_table: str) -> Optional[str]:
        self.destination_table(destination_table)
        return None

    def synthetic_key_column(self, destination_table: str) -> Optional[str]:
        return None

    def is_table_dropped(self, source_table: str) -> bool:
        return False

    # Shared lookups

    def destination_table(self, destination_table: str) -> TableDefinition:
        """Definition of a destination table, MappingNotFoundError if absent"""
        return self.destination_schema.table(destination_table)

    def key_columns(self, destination_table: str) -> List[str]:
        return list(self.destination_table(destination_table).primary_key)

    def column_type(self, destination_table: str, destination_column: str) -> str:
        column = self.destination_table(destination_table).column(destination_column)
        if column is None:
            raise MappingNotFoundError(
                f"Column '{destination_column}' not found in destination table '{destination_table}'")
        return column.data_type

    def resolve(self, source_table: str) -> SchemaMapping:
        """Resolve the full mapping of one source table (cached)"""
        mapping = self._resolved.get(source_table)
        if mapping is not None:
            return mapping

        destination_table = self.map_table(source_table)
        table = self.destination_table(destination_table)
        pairs = []
        for column in table.columns:
            source_column = self.source_column_name(destination_table, column.name)
            if source_column is None:
                continue
            pairs.append(ColumnPair(
                source_column=source_column,
                destination_column=column.name,
                destination_type=column.data_type
            ))

        mapping = SchemaMapping(
            source_table=source_table,
            destination_table=destination_table,
            columns=tuple(pairs),
            primary_key=tuple(table.primary_key),
            shard_key_column=self.shard_key_column(destination_table)
        )
        with self._resolved_lock:
            self._resolved[source_table] = mapping
        return mapping

    def column_pairs(self, source_table: str) -> Tuple[ColumnPair, ...]:
        return self.resolve(source_table).columns


class IdentityMapper(SchemaMapper):
    """Source and destination names are identical"""

    name = "identity"


class OverridesMapper(SchemaMapper):
    """Renames tables and columns; anything not renamed maps to itself"""

    name = "overrides"

    def __init__(self, destination_schema: DestinationSchema,
                 table_renames: Dict[str, str] = None,
                 column_renames: Dict[str, Dict[str, str]] = None):
        super().__init__(destination_schema)
        self.table_renames = dict(table_renames or {})
        self.column_renames = {table: dict(columns) for table, columns in (column_renames or {}).items()}

        self._reverse_tables = {dest: src for src, dest in self.table_renames.items()}
        if len(self._reverse_tables) != len(self.table_renames):
            raise ConfigurationError("Table overrides map more than one source table to the same destination table")
        self._reverse_columns = {
            table: {dest: src for src, dest in columns.items()}
            for table, columns in self.column_renames.items()
        }

    @classmethod
    def from_file(cls, path: str, destination_schema: DestinationSchema) -> 'OverridesMapper':
        """Load ``renamedTables`` / ``renamedColumns`` from a JSON or YAML file"""
        data = load_structured_file(path, "schema overrides file")
        table_renames = data.get('renamedTables') or {}
        column_renames = data.get('renamedColumns') or {}

        if not isinstance(table_renames, dict) or not all(
                isinstance(k, str) and isinstance(v, str) for k, v in table_renames.items()):
            raise ConfigurationError(f"'renamedTables' in {path} must map table names to table names")
        if not isinstance(column_renames, dict) or not all(
                isinstance(columns, dict) for columns in column_renames.values()):
            raise ConfigurationError(f"'renamedColumns' in {path} must map table names to column renames")

        return cls(destination_schema, table_renames, column_renames)

    @classmethod
    def from_strings(cls, table_overrides: str, column_overrides: str,
                     destination_schema: DestinationSchema) -> 'OverridesMapper':
        """Parse ``[{src,dest}]`` table and ``[{tbl.col,tbl.newcol}]`` column overrides"""
        table_renames = dict(parse_override_pairs(table_overrides, "table overrides"))

        column_renames: Dict[str, Dict[str, str]] = {}
        for source, destination in parse_override_pairs(column_overrides, "column overrides"):
            source_table, source_column = _split_column_reference(source)
            destination_table, destination_column = _split_column_reference(destination)
            if source_table != destination_table:
                raise ConfigurationError(
                    f"The table name in the source and destination column override must be same: "
                    f"{{{source},{destination}}}")
            column_renames.setdefault(source_table, {})[source_column] = destination_column

        return cls(destination_schema, table_renames, column_renames)

    def map_table(self, source_table: str) -> str:
        return self.table_renames.get(source_table, source_table)

    def map_column(self, source_table: str, source_column: str) -> Optional[str]:
        return self.column_renames.get(source_table, {}).get(source_column, source_column)

    def source_table_name(self, destination_table: str) -> str:
        return self._reverse_tables.get(destination_table, destination_table)

    def source_column_name(self, destination_table: str, destination_column: str) -> Optional[str]:
        source_table = self.source_table_name(destination_table)
        return self._reverse_columns.get(source_table, {}).get(destination_column, destination_column)


class SessionMapper(SchemaMapper):
    """Mapping described by a schema-discovery session file.

    The session file holds ``SrcSchema`` and ``SpSchema`` objects keyed by a
    shared table id; columns are linked through shared column ids. Source
    columns without a destination counterpart are dropped, destination columns
    without a source counterpart (synthetic keys, shard id) are filled in by
    the transformer.
    """

    name = "session"

    def __init__(self, destination_schema: DestinationSchema, session: Dict[str, Any]):
        super().__init__(destination_schema)
        try:
            self._load(session)
        except (KeyError, TypeError, AttributeError) as e:
            raise ConfigurationError(f"Malformed session file: {e}")

    @classmethod
    def from_file(cls, path: str, destination_schema: DestinationSchema) -> 'SessionMapper':
        return cls(destination_schema, load_structured_file(path, "session file"))

    def _load(self, session: Dict[str, Any]) -> None:
        source_schema = session['SrcSchema']
        destination_schema = session['SpSchema']
        synthetic_keys = session.get('SyntheticPKeys') or {}

        # source table name -> table id, destination table name -> table id
        self._source_ids: Dict[str, str] = {}
        self._destination_ids: Dict[str, str] = {}
        self._source_tables: Dict[str, Dict[str, Any]] = {}
        self._destination_tables: Dict[str, Dict[str, Any]] = {}

        for table_id, table in source_schema.items():
            self._source_ids[table['Name']] = table_id
            self._source_tables[table_id] = table
        for table_id, table in destination_schema.items():
            self._destination_ids[table['Name']] = table_id
            self._destination_tables[table_id] = table

        self._synthetic_keys: Dict[str, str] = {}
        for table_id, synthetic in synthetic_keys.items():
            table = self._destination_tables.get(table_id)
            if table is not None:
                self._synthetic_keys[table['Name']] = table['ColDefs'][synthetic['ColId']]['Name']

    def _source_table(self, source_table: str) -> Tuple[str, Dict[str, Any]]:
        table_id = self._source_ids.get(source_table)
        if table_id is None:
            raise MappingNotFoundError(f"Source table '{source_table}' not found in session file")
        return table_id, self._source_tables[table_id]

    def _destination_entry(self, destination_table: str) -> Tuple[str, Dict[str, Any]]:
        table_id = self._destination_ids.get(destination_table)
        if table_id is None:
            raise MappingNotFoundError(f"Destination table '{destination_table}' not found in session file")
        return table_id, self._destination_tables[table_id]

    def is_table_dropped(self, source_table: str) -> bool:
        table_id, _ = self._source_table(source_table)
        return table_id not in self._destination_tables

    def map_table(self, source_table: str) -> str:
        table_id, _ = self._source_table(source_table)
        destination = self._destination_tables.get(table_id)
        if destination is None:
            raise MappingNotFoundError(f"Source table '{source_table}' is dropped in the session file")
        return destination['Name']

    def map_column(self, source_table: str, source_column: str) -> Optional[str]:
        table_id, source = self._source_table(source_table)
        destination = self._destination_tables.get(table_id)
        if destination is None:
            return None
        for column_id, column in source['ColDefs'].items():
            if column['Name'] == source_column:
                destination_column = destination['ColDefs'].get(column_id)
                return destination_column['Name'] if destination_column else None
        return None

    def source_table_name(self, destination_table: str) -> str:
        table_id, _ = self._destination_entry(destination_table)
        source = self._source_tables.get(table_id)
        if source is None:
            raise MappingNotFoundError(f"Destination table '{destination_table}' has no source table")
        return source['Name']

    def source_column_name(self, destination_table: str, destination_column: str) -> Optional[str]:
        table_id, destination = self._destination_entry(destination_table)
        source = self._source_tables.get(table_id)
        if source is None:
            return None
        for column_id, column in destination['ColDefs'].items():
            if column['Name'] == destination_column:
                source_column = source['ColDefs'].get(column_id)
                return source_column['Name'] if source_column else None
        return None

    def shard_key_column(self, destination_table: str) -> Optional[str]:
        _, destination = self._destination_entry(destination_table)
        shard_column_id = destination.get('ShardIdColumn')
        if not shard_column_id:
            return None
        column = destination['ColDefs'].get(shard_column_id)
        return column['Name'] if column else None

    def synthetic_key_column(self, destination_table: str) -> Optional[str]:
        return self._synthetic_keys.get(destination_table)

    def column_type(self, destination_table: str, destination_column: str) -> str:
        if self.destination_schema.has_table(destination_table):
            return super().column_type(destination_table, destination_column)
        _, destination = self._destination_entry(destination_table)
        for column in destination['ColDefs'].values():
            if column['Name'] == destination_column:
                return column.get('T', {}).get('Name', '')
        raise MappingNotFoundError(
            f"Column '{destination_column}' not found in destination table '{destination_table}'")


def parse_override_pairs(value: str, description: str) -> List[Tuple[str, str]]:
    """Parse the compact ``[{a,b},{c,d}]`` override syntax into pairs"""
    if not value:
        return []
    text = value.strip()
    if not (text.startswith('[') and text.endswith(']')):
        raise ConfigurationError(f"Invalid {description}, expected [{{source,destination}},...]: {value}")
    body = text[1:-1]
    pairs = [(source, destination) for source, destination in _OVERRIDE_PAIR.findall(body)]
    leftover = _OVERRIDE_PAIR.sub('', body).replace(',', '').strip()
    if leftover:
        raise ConfigurationError(f"Invalid {description}, cannot parse '{leftover}' in: {value}")
    sources = [source for source, _ in pairs]
    if len(set(sources)) != len(sources):
        raise ConfigurationError(f"Duplicate source in {description}: {value}")
    return pairs


def _split_column_reference(reference: str) -> Tuple[str, str]:
    if '.' not in reference:
        raise ConfigurationError(f"Column override must be in format 'table.column', got: {reference}")
    table, column = reference.split('.', 1)
    if not table or not column:
        raise ConfigurationError(f"Column override must be in format 'table.column', got: {reference}")
    return table, column


def build_schema_mapper(config: SchemaOverridesConfig, destination_schema: DestinationSchema) -> SchemaMapper:
    """Select and build the single configured mapping strategy.

    Raises ConfigurationError when more than one override source is set or when
    the selected source cannot be parsed.
    """
    logger = structlog.get_logger()
    sources = config.active_sources()
    if len(sources) > 1:
        raise ConfigurationError(
            f"{MULTIPLE_OVERRIDES_MESSAGE}, found: {', '.join(sources)}")

    if config.session_file:
        mapper = SessionMapper.from_file(config.session_file, destination_schema)
    elif config.schema_overrides_file:
        mapper = OverridesMapper.from_file(config.schema_overrides_file, destination_schema)
    elif config.table_overrides or config.column_overrides:
        mapper = OverridesMapper.from_strings(
            config.table_overrides, config.column_overrides, destination_schema)
    else:
        mapper = IdentityMapper(destination_schema)

    logger.info("Schema mapper configured", strategy=mapper.name)
    return mapper


def synthetic_key_value(source_table: str, values: Dict[str, Any]) -> str:
    """Deterministic key for rows of tables without a source primary key.

    Derived from the source row content so that redelivery of the same change
    produces the same key. Callers pass the event's source values, not the
    transformed row, so the key of a source row does not depend on what a
    custom transformation makes of it.
    """
    canonical = json.dumps(values, sort_keys=True, default=str, separators=(',', ':'))
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{source_table}:{canonical}"))
