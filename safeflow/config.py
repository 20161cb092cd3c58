"""
SAFEFLOW Configuration System

Validator limits, runtime limits and logging settings, layered from YAML
files, environment variables and runtime overrides.

Precedence, highest first:
    1. Environment variables (SAFEFLOW_*)
    2. Runtime overrides
    3. User config file (~/.safeflow/config.yaml)
    4. Project config file (./safeflow.yaml)
    5. Default values

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

from safeflow.hardening import SafeflowError
from safeflow.opcodes import SubroutineOperand

T = TypeVar("T")


class ConfigError(SafeflowError):
    """Bad configuration value, path or file."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    One setting: default, optional SAFEFLOW_* binding, range check and change
    callbacks. String input is coerced to the type of the default.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[T, T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        """Environment first, then override, then default."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: Any) -> None:
        """Set the value with coercion and validation."""
        if isinstance(value, str) and not isinstance(self.default, str):
            try:
                value = self._coerce(value)
            except ValueError as e:
                raise ConfigError(f"Invalid value for config: {value!r}") from e
        if self.validator and not self.validator(value):
            raise ConfigError(f"Invalid value for config: {value!r}")

        old_value = self._value
        self._value = value

        for callback in self._callbacks:
            callback(old_value, value)

    def reset(self) -> None:
        self._value = None

    def _coerce(self, value: str) -> T:
        """Parse an environment or CLI string."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        else:
            return value  # type: ignore

    def on_change(self, callback: Callable[[T, T], None]) -> None:
        self._callbacks.append(callback)


@dataclass
class ValidatorConfig:
    """Configuration for the static validator."""
    stack_limit: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1024,
        env_var="SAFEFLOW_STACK_LIMIT",
        description="Maximum operand stack depth",
        validator=lambda x: 0 < x <= 4096,
    ))
    step_ceiling_factor: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=64,
        env_var="SAFEFLOW_STEP_CEILING_FACTOR",
        description="Traversal steps allowed per code byte and table entry",
        validator=lambda x: x > 0,
    ))
    subroutine_operand: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="immediate",
        env_var="SAFEFLOW_SUBROUTINE_OPERAND",
        description="JUMPSUB destination source (immediate, stack)",
        validator=lambda x: x in ("immediate", "stack"),
    ))


@dataclass
class RuntimeConfig:
    """Configuration for subroutine execution and the host interpreter."""
    return_stack_limit: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1024,
        env_var="SAFEFLOW_RETURN_STACK_LIMIT",
        description="Maximum return stack depth",
        validator=lambda x: 0 < x <= 4096,
    ))
    data_stack_limit: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1024,
        env_var="SAFEFLOW_DATA_STACK_LIMIT",
        description="Maximum data stack depth in the host interpreter",
        validator=lambda x: 0 < x <= 4096,
    ))
    max_steps: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1_000_000,
        env_var="SAFEFLOW_MAX_STEPS",
        description="Instruction budget for a single execution",
        validator=lambda x: x > 0,
    ))


@dataclass
class ObservabilityConfig:
    """Logging level and output format."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="warning",
        env_var="SAFEFLOW_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="SAFEFLOW_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class SafeflowConfig:
    """Root of the settings tree: one section per component."""
    validator: ValidatorConfig = field(default_factory=ValidatorConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Effective values, nested by section."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False)


class ConfigManager:
    """
    Process-wide owner of the settings tree (a thread-safe singleton).

    Files are applied in load order; environment variables are read on every
    access and so always win.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._config = SafeflowConfig()
        self._config_paths: List[Path] = []
        self._watchers: List[Callable[[SafeflowConfig], None]] = []
        self._initialized = True

    @property
    def config(self) -> SafeflowConfig:
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Apply a YAML mapping of sections to values."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Malformed configuration file {path}: {e}") from e

        if data:
            if not isinstance(data, dict):
                raise ConfigError(f"Configuration file {path} must contain a mapping")
            self._apply_dict(data)
            if path not in self._config_paths:
                self._config_paths.append(path)

    def load_defaults(self) -> List[Path]:
        """Load default configuration files if they exist. Returns loaded paths."""
        default_paths = [
            Path("safeflow.yaml"),
            Path("config/safeflow.yaml"),
            Path.home() / ".safeflow" / "config.yaml",
        ]

        loaded = []
        for path in default_paths:
            if path.exists():
                self.load_from_file(path)
                loaded.append(path)
        return loaded

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown config key: {prefix}{key}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, f"{prefix}{key}.")
                else:
                    raise ConfigError(f"Config section {prefix}{key} expects a mapping")

        apply_to_config(self._config, data, "")

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, part) or part.startswith("_"):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("validator.stack_limit", 512)
        """
        attr = self._resolve(path)
        if isinstance(attr, ConfigValue):
            attr.set(value)
        else:
            raise ConfigError(f"Invalid config path: {path}")

        for watcher in self._watchers:
            watcher(self._config)

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("runtime.max_steps")
        """
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def watch(self, callback: Callable[[SafeflowConfig], None]) -> None:
        self._watchers.append(callback)

    def reload(self) -> None:
        """Re-apply every file loaded so far."""
        for path in self._config_paths:
            if path.exists():
                self.load_from_file(path)

        for watcher in self._watchers:
            watcher(self._config)

    def reset(self) -> None:
        """Drop runtime overrides and loaded files."""
        self._config = SafeflowConfig()
        self._config_paths = []

    def validate(self) -> List[str]:
        """
        Re-check every effective value, environment included.

        Returns one message per value that fails its range check.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value}")
                except ValueError as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Describe every setting: type, default, description, env var."""
        schema: Dict[str, Any] = {"properties": {}}

        def extract_schema(obj: Any, properties: Dict[str, Any]) -> None:
            if isinstance(obj, ConfigValue):
                properties["type"] = type(obj.default).__name__
                properties["default"] = str(obj.default)
                properties["description"] = obj.description
                if obj.env_var:
                    properties["env_var"] = obj.env_var
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    properties[field_name] = {}
                    extract_schema(getattr(obj, field_name), properties[field_name])

        extract_schema(self._config, schema["properties"])
        return schema


def get_config() -> SafeflowConfig:
    """Get the current SAFEFLOW configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    return ConfigManager()


def default_subroutine_operand() -> SubroutineOperand:
    """JUMPSUB operand mode selected by ``validator.subroutine_operand``."""
    return SubroutineOperand(get_config().validator.subroutine_operand.get())
