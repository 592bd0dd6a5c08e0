"""
Proof-of-Money Settlement Configuration

Configuration with YAML files, environment variables, validation, and runtime
updates.

Configuration Sources (in order of precedence):
    1. Environment variables (POMSETTLE_*)
    2. Runtime overrides
    3. Project config file (./pomsettle.yaml or ./config/pomsettle.yaml)
    4. Default values

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

T = TypeVar("T")


class ConfigError(Exception):
    """Configuration error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding,
    validation, and change callbacks.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    secret: bool = False
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[T, T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: Any) -> None:
        """Set the value with validation."""
        if isinstance(value, str) and not isinstance(self.default, str):
            value = self._coerce(value)
        if self.validator and not self.validator(value):
            raise ConfigError(f"Invalid value for config: {value}")

        old_value = self._value
        self._value = value
        for callback in self._callbacks:
            callback(old_value, value)

    def reset(self) -> None:
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        elif target_type == float:
            return float(value)  # type: ignore
        elif target_type == list:
            return value.split(",")  # type: ignore
        else:
            return value  # type: ignore

    def on_change(self, callback: Callable[[T, T], None]) -> None:
        self._callbacks.append(callback)


@dataclass
class SettlementConfig:
    """Planning and execution limits."""
    max_operations_per_tx: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=100,
        env_var="POMSETTLE_MAX_OPS_PER_TX",
        description="Maximum operations per external transaction",
        validator=lambda x: 0 < x <= 100,
    ))
    base_fee_per_operation: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=100,
        env_var="POMSETTLE_BASE_FEE",
        description="Fee per operation in base units",
        validator=lambda x: x >= 0,
    ))
    worker_threads: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=4,
        env_var="POMSETTLE_WORKERS",
        description="Concurrent (subnet, block) settlement tasks",
        validator=lambda x: 0 < x <= 64,
    ))


@dataclass
class FxConfig:
    """Foreign-exchange routing bounds."""
    max_slippage_percent: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1,
        env_var="POMSETTLE_FX_MAX_SLIPPAGE",
        description="Maximum slippage percent between quote and execution",
        validator=lambda x: 0 <= x <= 100,
    ))
    max_path_retries: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=2,
        env_var="POMSETTLE_FX_PATH_RETRIES",
        description="Retries for path discovery and slippage failures",
        validator=lambda x: x >= 0,
    ))
    source_asset_code: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="POMSETTLE_FX_SOURCE_CODE",
        description="Asset code the treasury sends for FX withdrawals (empty: FX disabled)",
    ))
    source_asset_issuer: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="NATIVE",
        env_var="POMSETTLE_FX_SOURCE_ISSUER",
        description="Issuer of the FX source asset (NATIVE or 32-byte hex)",
    ))


@dataclass
class RetryConfigSection:
    """Network submission retry policy."""
    max_retries: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3,
        env_var="POMSETTLE_RETRY_MAX",
        description="Retries after the first attempt for transient failures",
        validator=lambda x: 0 <= x <= 20,
    ))
    base_delay_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=1.0,
        env_var="POMSETTLE_RETRY_BASE_DELAY",
        description="Base backoff delay in seconds",
        validator=lambda x: x >= 0,
    ))
    max_delay_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=30.0,
        env_var="POMSETTLE_RETRY_MAX_DELAY",
        description="Backoff delay cap in seconds",
        validator=lambda x: x >= 0,
    ))
    backoff_multiplier: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=2.0,
        env_var="POMSETTLE_RETRY_MULTIPLIER",
        description="Exponential backoff multiplier",
        validator=lambda x: x >= 1,
    ))


@dataclass
class ReplayConfig:
    """Settlement record persistence."""
    store_path: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="POMSETTLE_REPLAY_STORE",
        description="JSON file for settlement records (empty: in-memory only)",
    ))


@dataclass
class ObservabilityConfig:
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="POMSETTLE_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="POMSETTLE_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class PomSettleConfig:
    """Root configuration aggregating all sections."""
    settlement: SettlementConfig = field(default_factory=SettlementConfig)
    fx: FxConfig = field(default_factory=FxConfig)
    retry: RetryConfigSection = field(default_factory=RetryConfigSection)
    replay: ReplayConfig = field(default_factory=ReplayConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
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
    Configuration manager with file loading and environment binding.

    Thread-safe singleton that manages configuration lifecycle.
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

        self._config = PomSettleConfig()
        self._config_paths: List[Path] = []
        self._initialized = True

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton so the next access starts from defaults."""
        with cls._lock:
            cls._instance = None

    @property
    def config(self) -> PomSettleConfig:
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if data:
            if not isinstance(data, dict):
                raise ConfigError(f"Configuration root must be a mapping: {path}")
            self._apply_dict(data)
            self._config_paths.append(path)

    def load_defaults(self) -> None:
        """Load default configuration files if they exist."""
        for path in (Path("pomsettle.yaml"), Path("config/pomsettle.yaml")):
            if path.exists():
                self.load_from_file(path)

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
                    raise ConfigError(f"Section {prefix}{key} must be a mapping")

        apply_to_config(self._config, data, "")

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("settlement.max_operations_per_tx", 50)
        """
        attr = self._resolve(path)
        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        attr.set(value)

    def get(self, path: str) -> Any:
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def validate(self) -> List[str]:
        """Validate all configuration values; returns error messages."""
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value}")
                except (TypeError, ValueError) as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Export configuration schema for documentation."""
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


def get_config() -> PomSettleConfig:
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    return ConfigManager()
