"""
Change event transformer for shadowrepl

Turns a source change event into a destination mutation: applies the custom
transformation, maps table and column names, fills the shard id and synthetic
key columns and coerces values onto destination column types.
"""

from typing import Dict, Any, Optional

import structlog

from ..exceptions import ShadowReplError, TransformError
from ..models.events import ChangeEvent, Mutation
from ..models.transforms import (
    TransformResult,
    TransformationRequest,
    TransformationContext,
    ShardingContext
)
from ..utils.type_converter import coerce_value
from .schema_mapper import SchemaMapper, synthetic_key_value
from .transform_service import CustomTransformation


class ChangeEventTransformer:
    """Stateless per-event transformation stage; safe to share between workers"""

    def __init__(self, schema_mapper: SchemaMapper,
                 transformation_context: Optional[TransformationContext] = None,
                 sharding_context: Optional[ShardingContext] = None,
                 custom_transformation: Optional[CustomTransformation] = None,
                 round_json_decimals: bool = False,
                 stream_name: Optional[str] = None):
        self.schema_mapper = schema_mapper
        self.transformation_context = transformation_context or TransformationContext()
        self.sharding_context = sharding_context or ShardingContext()
        self.custom_transformation = custom_transformation
        self.round_json_decimals = round_json_decimals
        self.stream_name = stream_name
        self.logger = structlog.get_logger()

    def transform(self, event: ChangeEvent) -> TransformResult:
        """Transform one event.

        Never raises for per-event problems: missing mappings, conversion
        failures, missing key columns and custom transformation errors come
        back as an ERROR result.
        """
        try:
            return self._transform(event)
        except ShadowReplError as e:
            self.logger.warning("Change event transformation failed",
                                event_id=event.event_id,
                                table=event.table,
                                error=str(e))
            return TransformResult.failed(event, str(e))

    def _transform(self, event: ChangeEvent) -> TransformResult:
        if self.schema_mapper.is_table_dropped(event.table):
            self.logger.debug("Skipping change for dropped table", table=event.table)
            return TransformResult.filtered(event)

        shard_id = self.resolve_shard_id(event)
        values = dict(event.values)

        if self.custom_transformation is not None:
            response = self.custom_transformation.apply(TransformationRequest(
                table_name=event.table,
                operation=event.operation,
                row=dict(values),
                shard_id=shard_id
            ))
            if response.filtered:
                self.logger.debug("Change event filtered by custom transformation",
                                  event_id=event.event_id, table=event.table)
                return TransformResult.filtered(event)
            values.update(response.row)

        mapping = self.schema_mapper.resolve(event.table)

        row: Dict[str, Any] = {}
        for pair in mapping.columns:
            if pair.source_column in values:
                row[pair.destination_column] = coerce_value(
                    values[pair.source_column], pair.destination_type, self.round_json_decimals)

        if mapping.shard_key_column and row.get(mapping.shard_key_column) is None and shard_id is not None:
            row[mapping.shard_key_column] = shard_id

        # Keyed on the source row; custom transformation output does not change it
        synthetic_column = self.schema_mapper.synthetic_key_column(mapping.destination_table)
        if synthetic_column and row.get(synthetic_column) is None:
            row[synthetic_column] = synthetic_key_value(event.table, event.values)

        if not mapping.primary_key:
            raise TransformError(f"Destination table '{mapping.destination_table}' has no primary key")
        missing = [column for column in mapping.primary_key if row.get(column) is None]
        if missing:
            raise TransformError(
                f"missing required key columns {missing} for table '{mapping.destination_table}'")

        mutation = Mutation(
            table=mapping.destination_table,
            operation=event.operation,
            key=tuple((column, row[column]) for column in mapping.primary_key),
            values=row,
            token=event.token,
            event=event
        )
        return TransformResult.success(event, mutation)

    def resolve_shard_id(self, event: ChangeEvent) -> Optional[str]:
        """Shard id carried by the event, else looked up from the contexts"""
        if event.shard_id:
            return event.shard_id
        shard_id = self.sharding_context.shard_id_for(
            event.stream_name or self.stream_name, event.source_database)
        if shard_id:
            return shard_id
        return self.transformation_context.shard_id_for(event.source_database)
