"""
Configuration models for shadowrepl
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, Optional, List
from ..exceptions import ConfigurationError


DEFAULT_SHADOW_TABLE_PREFIX = "shadow_"

MULTIPLE_OVERRIDES_MESSAGE = "Only one type of schema override can be specified"


class RunMode(Enum):
    """Pipeline run modes"""
    REGULAR = "regular"
    RETRY_ONLY = "retry_only"


class DlqIntakeMode(Enum):
    """How retryable DLQ entries are picked up again"""
    POLLING = "polling"
    NOTIFICATION = "notification"


@dataclass
class DatabaseConfig:
    """Database connection configuration"""
    host: str
    port: int = 3306
    user: str = ""
    password: str = ""
    database: str = ""
    charset: str = "utf8mb4"
    autocommit: bool = False
    connect_timeout: int = 10
    read_timeout: int = 30
    write_timeout: int = 30

    def __post_init__(self):
        """Validate configuration after initialization"""
        if not self.host:
            raise ConfigurationError("Host is required")
        if not self.user:
            raise ConfigurationError("User is required")
        if not self.database:
            raise ConfigurationError("Database is required")
        if not (1 <= self.port <= 65535):
            raise ConfigurationError("Port must be between 1 and 65535")

    def to_connection_params(self) -> Dict[str, Any]:
        """Convert to pymysql connection parameters"""
        return {
            'host': self.host,
            'port': self.port,
            'user': self.user,
            'password': self.password,
            'database': self.database,
            'charset': self.charset,
            'autocommit': self.autocommit,
            'connect_timeout': self.connect_timeout,
            'read_timeout': self.read_timeout,
            'write_timeout': self.write_timeout
        }


@dataclass
class SchemaOverridesConfig:
    """Source of the source-to-destination schema mapping.

    At most one of the override sources may be set. The check runs when the
    configuration file is validated and again when the mapper is built.
    """
    identity_mapping: bool = False
    session_file: Optional[str] = None
    schema_overrides_file: Optional[str] = None
    table_overrides: str = ""
    column_overrides: str = ""

    def active_sources(self) -> List[str]:
        """Names of the override sources that are configured"""
        sources = []
        if self.identity_mapping:
            sources.append("identity_mapping")
        if self.session_file:
            sources.append("session_file")
        if self.schema_overrides_file:
            sources.append("schema_overrides_file")
        if self.table_overrides or self.column_overrides:
            sources.append("string_overrides")
        return sources


@dataclass
class DlqConfig:
    """Dead-letter queue configuration"""
    directory: str = "dlq"
    max_retry_count: int = 500
    retry_interval_minutes: int = 10
    intake: DlqIntakeMode = DlqIntakeMode.POLLING

    def __post_init__(self):
        """Validate configuration after initialization"""
        if not self.directory:
            raise ConfigurationError("DLQ directory is required")
        if self.max_retry_count < 0:
            raise ConfigurationError("DLQ max retry count must not be negative")
        if self.retry_interval_minutes <= 0:
            raise ConfigurationError("DLQ retry interval must be positive")
        if not isinstance(self.intake, DlqIntakeMode):
            try:
                self.intake = DlqIntakeMode(self.intake)
            except ValueError:
                raise ConfigurationError(f"Unsupported DLQ intake mode: {self.intake}")

    @property
    def retry_interval_seconds(self) -> float:
        return self.retry_interval_minutes * 60.0


@dataclass
class CustomTransformationConfig:
    """Handle of a user-supplied transformation class"""
    module: str
    class_name: str
    parameters: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        """Validate configuration after initialization"""
        if not self.module:
            raise ConfigurationError("Custom transformation module is required")
        if not self.class_name:
            raise ConfigurationError("Custom transformation class name is required")
        if self.parameters is None:
            self.parameters = {}


@dataclass
class MonitoringConfig:
    """Prometheus endpoint configuration"""
    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class MigrationConfig:
    """Main migration configuration"""
    destination: DatabaseConfig
    schema: SchemaOverridesConfig = field(default_factory=SchemaOverridesConfig)
    dlq: DlqConfig = field(default_factory=DlqConfig)
    shadow_table_prefix: str = DEFAULT_SHADOW_TABLE_PREFIX
    shadow_table_database: Optional[str] = None
    should_create_shadow_tables: bool = True
    run_mode: RunMode = RunMode.REGULAR
    round_json_decimals: bool = False
    workers: int = 4
    filtered_events_directory: Optional[str] = None
    transformation_context_file: Optional[str] = None
    sharding_context_file: Optional[str] = None
    stream_name: Optional[str] = None
    custom_transformation: Optional[CustomTransformationConfig] = None
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    def __post_init__(self):
        """Validate configuration after initialization"""
        if not self.shadow_table_prefix:
            raise ConfigurationError("Shadow table prefix must not be empty")
        if self.workers <= 0:
            raise ConfigurationError("Workers must be positive")
        if not isinstance(self.run_mode, RunMode):
            try:
                self.run_mode = RunMode(self.run_mode)
            except ValueError:
                raise ConfigurationError(f"Unsupported run mode: {self.run_mode}")

    @property
    def is_regular_mode(self) -> bool:
        return self.run_mode == RunMode.REGULAR

    @property
    def shadow_database(self) -> str:
        """Database holding the shadow tables"""
        return self.shadow_table_database or self.destination.database

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'MigrationConfig':
        """Create MigrationConfig from dictionary"""
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a dictionary")
        try:
            destination_data = config_dict['destination']
            if not isinstance(destination_data, dict):
                raise ConfigurationError("Destination must be a dictionary")
            destination = DatabaseConfig(**destination_data)

            schema = SchemaOverridesConfig(**(config_dict.get('schema') or {}))
            dlq = DlqConfig(**(config_dict.get('dlq') or {}))
            monitoring = MonitoringConfig(**(config_dict.get('monitoring') or {}))

            custom_transformation = None
            if config_dict.get('custom_transformation'):
                custom_transformation = CustomTransformationConfig(**config_dict['custom_transformation'])

            return cls(
                destination=destination,
                schema=schema,
                dlq=dlq,
                shadow_table_prefix=config_dict.get('shadow_table_prefix', DEFAULT_SHADOW_TABLE_PREFIX),
                shadow_table_database=config_dict.get('shadow_table_database'),
                should_create_shadow_tables=config_dict.get('should_create_shadow_tables', True),
                run_mode=config_dict.get('run_mode', RunMode.REGULAR.value),
                round_json_decimals=config_dict.get('round_json_decimals', False),
                workers=config_dict.get('workers', 4),
                filtered_events_directory=config_dict.get('filtered_events_directory'),
                transformation_context_file=config_dict.get('transformation_context_file'),
                sharding_context_file=config_dict.get('sharding_context_file'),
                stream_name=config_dict.get('stream_name'),
                custom_transformation=custom_transformation,
                monitoring=monitoring
            )
        except KeyError as e:
            raise ConfigurationError(f"Missing required configuration key: {e}")
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration format: {e}")
