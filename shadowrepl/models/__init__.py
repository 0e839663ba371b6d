"""
Data models for shadowrepl
"""

from .config import (
    DatabaseConfig,
    SchemaOverridesConfig,
    DlqConfig,
    DlqIntakeMode,
    CustomTransformationConfig,
    MonitoringConfig,
    MigrationConfig,
    RunMode
)
from .events import (
    OperationKind,
    OrderingToken,
    ChangeEvent,
    Mutation,
    ShadowRecord,
    DlqEntry,
    DlqQueue
)
from .schema import (
    ColumnDefinition,
    TableDefinition,
    DestinationSchema,
    ColumnPair,
    SchemaMapping
)
from .transforms import (
    TransformStatus,
    TransformResult,
    TransformationRequest,
    TransformationResponse,
    TransformationContext,
    ShardingContext
)
from .writes import (
    WriteStatus,
    WriteResult,
    ProcessingOutcome
)

__all__ = [
    'DatabaseConfig',
    'SchemaOverridesConfig',
    'DlqConfig',
    'DlqIntakeMode',
    'CustomTransformationConfig',
    'MonitoringConfig',
    'MigrationConfig',
    'RunMode',
    'OperationKind',
    'OrderingToken',
    'ChangeEvent',
    'Mutation',
    'ShadowRecord',
    'DlqEntry',
    'DlqQueue',
    'ColumnDefinition',
    'TableDefinition',
    'DestinationSchema',
    'ColumnPair',
    'SchemaMapping',
    'TransformStatus',
    'TransformResult',
    'TransformationRequest',
    'TransformationResponse',
    'TransformationContext',
    'ShardingContext',
    'WriteStatus',
    'WriteResult',
    'ProcessingOutcome'
]
