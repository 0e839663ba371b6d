"""
Transform service for shadowrepl

Loads the pluggable pieces of the transformation stage at setup time: the
user-supplied custom transformation and the transformation/sharding context
files.
"""

import importlib
import importlib.util
import os
from typing import Dict, Any, Optional

import structlog

from ..exceptions import ConfigurationError, TransformError
from ..models.config import CustomTransformationConfig
from ..models.transforms import (
    TransformationRequest,
    TransformationResponse,
    TransformationContext,
    ShardingContext
)
from .config_service import load_structured_file


class CustomTransformation:
    """Wraps a user transformation object behind a single ``apply`` capability.

    The wrapped object's ``apply(request)`` may return a TransformationResponse,
    a plain dict (the new row) or None (drop the event).
    """

    def __init__(self, handler: Any, name: str = "custom"):
        if not callable(getattr(handler, 'apply', None)):
            raise ConfigurationError(f"Custom transformation '{name}' has no apply() method")
        self.handler = handler
        self.name = name

    def apply(self, request: TransformationRequest) -> TransformationResponse:
        try:
            result = self.handler.apply(request)
        except Exception as e:
            raise TransformError(f"Custom transformation '{self.name}' failed: {e}") from e

        if result is None:
            return TransformationResponse(row={}, filtered=True)
        if isinstance(result, TransformationResponse):
            return result
        if isinstance(result, dict):
            return TransformationResponse(row=result, filtered=False)
        raise TransformError(
            f"Custom transformation '{self.name}' returned unsupported type {type(result).__name__}")


class TransformService:
    """Service for loading transformation plug-ins and context files"""

    def __init__(self):
        self._transform_module = None
        self.logger = structlog.get_logger()

    def load_transform_module(self, module_name: str, config_dir: str = None):
        """Load a module by import name, by .py path, or as <name>.py in config_dir"""
        self.logger.debug("Starting transform module loading",
                          module_name=module_name,
                          config_dir=config_dir)

        if module_name.endswith('.py'):
            candidates = [module_name]
            if config_dir and not os.path.isabs(module_name):
                candidates.append(os.path.join(config_dir, module_name))
            for path in candidates:
                if os.path.exists(path):
                    self._transform_module = self._load_from_path(path)
                    return self._transform_module
            raise ConfigurationError(f"Transform module file not found: {module_name}")

        try:
            self._transform_module = importlib.import_module(module_name)
            self.logger.debug("Imported transform module", module_name=module_name)
            return self._transform_module
        except ImportError as e:
            if config_dir:
                transform_path = os.path.join(config_dir, f"{module_name}.py")
                if os.path.exists(transform_path):
                    self._transform_module = self._load_from_path(transform_path)
                    return self._transform_module
            raise ConfigurationError(f"Failed to import transform module '{module_name}': {e}")

    def _load_from_path(self, path: str):
        module_name = os.path.splitext(os.path.basename(path))[0]
        spec = importlib.util.spec_from_file_location(module_name, path)
        if not spec or not spec.loader:
            raise ConfigurationError(f"Could not load module from file: {path}")
        module = importlib.util.module_from_spec(spec)
        try:
            spec.loader.exec_module(module)
        except Exception as e:
            raise ConfigurationError(f"Error executing transform module {path}: {e}")
        self.logger.debug("Loaded transform module from file", file_path=path)
        return module

    def load_custom_transformation(self, config: Optional[CustomTransformationConfig],
                                   config_dir: str = None) -> Optional[CustomTransformation]:
        """Instantiate the configured transformation class, or None when not configured"""
        if config is None:
            return None

        module = self.load_transform_module(config.module, config_dir)
        handler_class = getattr(module, config.class_name, None)
        if handler_class is None:
            raise ConfigurationError(
                f"Class '{config.class_name}' not found in transform module '{config.module}'")

        try:
            handler = handler_class()
            if callable(getattr(handler, 'init', None)):
                handler.init(dict(config.parameters))
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to initialize custom transformation '{config.class_name}': {e}")

        self.logger.info("Custom transformation loaded",
                         module=config.module,
                         class_name=config.class_name,
                         parameters=list(config.parameters.keys()))
        return CustomTransformation(handler, name=config.class_name)

    def load_transformation_context(self, path: Optional[str]) -> TransformationContext:
        if not path:
            return TransformationContext()
        data = self._load_context(path, "transformation context file")
        try:
            return TransformationContext.from_dict(data)
        except (TypeError, ValueError, AttributeError) as e:
            raise ConfigurationError(f"Malformed transformation context file {path}: {e}")

    def load_sharding_context(self, path: Optional[str]) -> ShardingContext:
        if not path:
            return ShardingContext()
        data = self._load_context(path, "sharding context file")
        try:
            return ShardingContext.from_dict(data)
        except (TypeError, ValueError, AttributeError) as e:
            raise ConfigurationError(f"Malformed sharding context file {path}: {e}")

    def _load_context(self, path: str, description: str) -> Dict[str, Any]:
        data = load_structured_file(path, description)
        self.logger.info("Loaded context file", path=path, description=description)
        return data
