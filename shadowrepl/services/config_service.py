"""
Configuration service for shadowrepl
"""

import json
import yaml
from typing import Dict, Any, List, Optional
from pathlib import Path

from ..exceptions import ConfigurationError
from ..models.config import MULTIPLE_OVERRIDES_MESSAGE, MigrationConfig


def load_structured_file(path: str, description: str = "file") -> Dict[str, Any]:
    """Load a JSON or YAML document into a dictionary.

    Raises ConfigurationError when the file is missing, unreadable or does not
    contain a mapping.
    """
    file_path = Path(path)
    if not file_path.exists():
        raise ConfigurationError(f"{description.capitalize()} not found: {file_path}")

    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            if file_path.suffix.lower() in ['.yml', '.yaml']:
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in {description} {file_path}: {e}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {description} {file_path}: {e}")
    except OSError as e:
        raise ConfigurationError(f"Cannot read {description} {file_path}: {e}")

    if not isinstance(data, dict):
        raise ConfigurationError(f"{description.capitalize()} {file_path} must contain an object")
    return data


class ConfigService:
    """Service for loading and managing configuration"""

    def __init__(self):
        self._config: Optional[MigrationConfig] = None
        self._config_path: Optional[Path] = None

    def load_config(self, config_path: str) -> MigrationConfig:
        """Load configuration from a .json, .yml or .yaml file"""
        path = Path(config_path)
        if path.suffix.lower() not in ['.json', '.yml', '.yaml']:
            raise ConfigurationError(f"Unsupported configuration format: {path.suffix}")

        config_dict = load_structured_file(config_path, "configuration file")
        self._config = MigrationConfig.from_dict(config_dict)
        self._config_path = path
        return self._config

    def get_config(self) -> MigrationConfig:
        """Get current configuration"""
        if self._config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._config

    @property
    def config_dir(self) -> Optional[str]:
        """Directory of the loaded configuration file"""
        return str(self._config_path.parent) if self._config_path else None

    def validation_errors(self, config: MigrationConfig) -> List[str]:
        """Cross-field problems that dataclass validation cannot see"""
        errors = []
        sources = config.schema.active_sources()
        if len(sources) > 1:
            errors.append(f"{MULTIPLE_OVERRIDES_MESSAGE}, found: {', '.join(sources)}")
        if config.shadow_table_database == "":
            errors.append("shadow_table_database cannot be empty")
        if config.custom_transformation and not config.custom_transformation.class_name:
            errors.append("custom_transformation requires class_name")
        return errors

    def validate_config(self, config: MigrationConfig) -> bool:
        return not self.validation_errors(config)
