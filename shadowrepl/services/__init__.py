"""
Services for shadowrepl
"""

from .config_service import ConfigService, load_structured_file
from .database_service import DatabaseService
from .schema_mapper import (
    SchemaMapper,
    IdentityMapper,
    OverridesMapper,
    SessionMapper,
    build_schema_mapper
)
from .transform_service import TransformService, CustomTransformation
from .change_event_transformer import ChangeEventTransformer
from .shadow_table_service import ShadowTableManager
from .transaction_writer import OrderingGuard, TransactionalWriter, classify_write_error
from .dlq_manager import DeadLetterQueueManager
from .filtered_events_writer import FilteredEventsWriter
from .metrics_service import MetricsService
from .metrics_endpoint import MetricsEndpoint

__all__ = [
    'ConfigService',
    'load_structured_file',
    'DatabaseService',
    'SchemaMapper',
    'IdentityMapper',
    'OverridesMapper',
    'SessionMapper',
    'build_schema_mapper',
    'TransformService',
    'CustomTransformation',
    'ChangeEventTransformer',
    'ShadowTableManager',
    'OrderingGuard',
    'TransactionalWriter',
    'classify_write_error',
    'DeadLetterQueueManager',
    'FilteredEventsWriter',
    'MetricsService',
    'MetricsEndpoint'
]
