"""
Event models for shadowrepl
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, Optional, Tuple


class OperationKind(Enum):
    """Kinds of captured changes"""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def parse(cls, value: Any) -> 'OperationKind':
        """Parse operation kind from enum, name or value (case-insensitive)"""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower()
            for kind in cls:
                if kind.value == normalized:
                    return kind
        raise ValueError(f"Unknown operation kind: {value!r}")


@dataclass(frozen=True, order=True)
class OrderingToken:
    """Source-assigned ordering of a change.

    Compared lexicographically as (timestamp, log_file, log_position), which is
    the commit timestamp followed by the binlog coordinates of the change.
    """
    timestamp: int
    log_file: str = ""
    log_position: int = 0

    @classmethod
    def parse(cls, value: Any) -> 'OrderingToken':
        """Build a token from a token, an int, a sequence or a dict"""
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            raise ValueError(f"Invalid ordering token: {value!r}")
        if isinstance(value, int):
            return cls(timestamp=value)
        if isinstance(value, (list, tuple)) and 1 <= len(value) <= 3:
            parts = list(value) + [None] * (3 - len(value))
            return cls(
                timestamp=int(parts[0]),
                log_file=str(parts[1]) if parts[1] is not None else "",
                log_position=int(parts[2]) if parts[2] is not None else 0
            )
        if isinstance(value, dict) and 'timestamp' in value:
            return cls(
                timestamp=int(value['timestamp']),
                log_file=str(value.get('log_file') or ""),
                log_position=int(value.get('log_position') or 0)
            )
        raise ValueError(f"Invalid ordering token: {value!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'log_file': self.log_file,
            'log_position': self.log_position
        }


@dataclass(frozen=True)
class ChangeEvent:
    """A single captured mutation from the source database"""
    table: str
    values: Dict[str, Any]
    operation: OperationKind
    token: OrderingToken
    shard_id: Optional[str] = None
    source_database: Optional[str] = None
    stream_name: Optional[str] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ChangeEvent':
        """Build an event from a raw record.

        Raises ValueError (or TypeError/KeyError) for structurally malformed
        records; callers route those to the severe queue.
        """
        if not isinstance(data, dict):
            raise ValueError("Change record must be a mapping")
        table = data.get('table')
        if not table or not isinstance(table, str):
            raise ValueError("Change record is missing the table name")
        values = data.get('values')
        if values is None:
            values = {}
        if not isinstance(values, dict):
            raise ValueError("Change record values must be a mapping")
        if 'token' not in data:
            raise ValueError("Change record is missing the ordering token")

        kwargs = {
            'table': table,
            'values': dict(values),
            'operation': OperationKind.parse(data.get('operation')),
            'token': OrderingToken.parse(data['token']),
            'shard_id': data.get('shard_id'),
            'source_database': data.get('source_database'),
            'stream_name': data.get('stream_name'),
        }
        if data.get('event_id'):
            kwargs['event_id'] = str(data['event_id'])
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_id': self.event_id,
            'table': self.table,
            'values': dict(self.values),
            'operation': self.operation.value,
            'token': self.token.to_dict(),
            'shard_id': self.shard_id,
            'source_database': self.source_database,
            'stream_name': self.stream_name
        }


@dataclass(frozen=True)
class Mutation:
    """Destination-ready change produced by the transformer"""
    table: str
    operation: OperationKind
    key: Tuple[Tuple[str, Any], ...]
    values: Dict[str, Any]
    token: OrderingToken
    event: ChangeEvent

    @property
    def key_columns(self) -> Tuple[str, ...]:
        return tuple(column for column, _ in self.key)

    @property
    def key_values(self) -> Tuple[Any, ...]:
        return tuple(value for _, value in self.key)

    @property
    def is_delete(self) -> bool:
        return self.operation == OperationKind.DELETE


@dataclass(frozen=True)
class ShadowRecord:
    """Per destination-row record of the last applied change"""
    key: Tuple[Any, ...]
    token: OrderingToken
    operation: Optional[OperationKind] = None


class DlqQueue(Enum):
    """Dead-letter queue classification"""
    RETRYABLE = "retryable"
    SEVERE = "severe"


@dataclass
class DlqEntry:
    """A failed change event waiting in a dead-letter queue"""
    event: Dict[str, Any]
    error_message: str
    queue: DlqQueue = DlqQueue.RETRYABLE
    retry_count: int = 0
    first_failure_time: float = field(default_factory=time.time)
    entry_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def from_failure(cls, event: Any, error_message: str, retryable: bool,
                     previous: Optional['DlqEntry'] = None) -> 'DlqEntry':
        """Create an entry for a failure, carrying attempt metadata forward"""
        payload = event.to_dict() if isinstance(event, ChangeEvent) else dict(event)
        queue = DlqQueue.RETRYABLE if retryable else DlqQueue.SEVERE
        if previous is not None:
            return cls(
                event=payload,
                error_message=error_message,
                queue=queue,
                retry_count=previous.retry_count,
                first_failure_time=previous.first_failure_time,
                entry_id=previous.entry_id
            )
        return cls(event=payload, error_message=error_message, queue=queue)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entry_id': self.entry_id,
            'event': self.event,
            'error_message': self.error_message,
            'queue': self.queue.value,
            'retry_count': self.retry_count,
            'first_failure_time': self.first_failure_time
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DlqEntry':
        return cls(
            event=data['event'],
            error_message=data.get('error_message', ''),
            queue=DlqQueue(data.get('queue', DlqQueue.RETRYABLE.value)),
            retry_count=int(data.get('retry_count', 0)),
            first_failure_time=float(data.get('first_failure_time', time.time())),
            entry_id=data.get('entry_id') or uuid.uuid4().hex
        )
