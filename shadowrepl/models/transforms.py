"""
Transform models for shadowrepl
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from enum import Enum

from .events import ChangeEvent, Mutation, OperationKind


class TransformStatus(Enum):
    """Transform execution status"""
    SUCCESS = "success"
    FILTERED = "filtered"
    ERROR = "error"


@dataclass
class TransformResult:
    """Outcome of transforming one change event"""
    status: TransformStatus
    event: ChangeEvent
    mutation: Optional[Mutation] = None
    error: Optional[str] = None

    @property
    def is_success(self) -> bool:
        """Check if transform was successful"""
        return self.status == TransformStatus.SUCCESS

    @property
    def is_filtered(self) -> bool:
        """Check if the event was dropped by the custom transformation"""
        return self.status == TransformStatus.FILTERED

    @property
    def is_error(self) -> bool:
        """Check if transform failed"""
        return self.status == TransformStatus.ERROR

    @classmethod
    def success(cls, event: ChangeEvent, mutation: Mutation) -> 'TransformResult':
        return cls(status=TransformStatus.SUCCESS, event=event, mutation=mutation)

    @classmethod
    def filtered(cls, event: ChangeEvent) -> 'TransformResult':
        return cls(status=TransformStatus.FILTERED, event=event)

    @classmethod
    def failed(cls, event: ChangeEvent, error: str) -> 'TransformResult':
        return cls(status=TransformStatus.ERROR, event=event, error=error)


@dataclass
class TransformationRequest:
    """Input handed to a custom transformation"""
    table_name: str
    operation: OperationKind
    row: Dict[str, Any]
    shard_id: Optional[str] = None


@dataclass
class TransformationResponse:
    """Output of a custom transformation.

    ``row`` is merged over the event's values: returned columns overwrite or
    add values and omitted columns keep theirs. ``filtered`` drops the event
    to the filtered-events side output.
    """
    row: Dict[str, Any] = field(default_factory=dict)
    filtered: bool = False


@dataclass
class TransformationContext:
    """Static context for transformations: logical database -> shard id"""
    schema_to_shard_id: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TransformationContext':
        return cls(schema_to_shard_id=dict(data.get('SchemaToShardId') or {}))

    def shard_id_for(self, database: Optional[str]) -> Optional[str]:
        if not database:
            return None
        return self.schema_to_shard_id.get(database)


@dataclass
class ShardingContext:
    """Static context for sharded sources: stream -> (database -> shard id)"""
    stream_to_db_and_shard: Dict[str, Dict[str, str]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ShardingContext':
        streams = data.get('StreamToDbAndShardMap') or {}
        return cls(stream_to_db_and_shard={stream: dict(dbs) for stream, dbs in streams.items()})

    def shard_id_for(self, stream_name: Optional[str], database: Optional[str]) -> Optional[str]:
        if not stream_name or not database:
            return None
        return self.stream_to_db_and_shard.get(stream_name, {}).get(database)
