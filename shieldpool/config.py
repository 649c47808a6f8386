"""
Shielded Pool Configuration System

Unified configuration management with YAML files, environment variables,
validation, and runtime updates.

Configuration Sources (in order of precedence):
    1. Environment variables (SHIELDPOOL_*)
    2. Runtime overrides
    3. User config file (~/.shieldpool/config.yaml)
    4. Project config file (./shieldpool.yaml)
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

from shieldpool.observability import PoolLayer, get_logger

T = TypeVar("T")

logger = get_logger("config", PoolLayer.CONFIG)


class ConfigError(Exception):
    """Configuration error."""
    pass


class ConfigValidationError(ConfigError):
    """Configuration validation error."""
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
    secret: bool = False  # Don't log if True
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[T, T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])

        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if isinstance(value, str) and not isinstance(self.default, str):
            value = self._coerce(value)
        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for config: {value}")

        old_value = self._value
        self._value = value

        for callback in self._callbacks:
            callback(old_value, value)

    def reset(self) -> None:
        """Drop any runtime override."""
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        try:
            if target_type == bool:
                return value.lower() in ("true", "1", "yes", "on")  # type: ignore
            elif target_type == int:
                return int(value)  # type: ignore
            elif target_type == float:
                return float(value)  # type: ignore
            elif target_type == list:
                return value.split(",")  # type: ignore
        except ValueError as e:
            raise ConfigValidationError(f"Cannot coerce {value!r} to {target_type.__name__}") from e
        return value  # type: ignore

    def on_change(self, callback: Callable[[T, T], None]) -> None:
        """Register a change callback."""
        self._callbacks.append(callback)


def _is_hex32_or_empty(value: str) -> bool:
    if value == "":
        return True
    try:
        return len(bytes.fromhex(value)) == 32
    except ValueError:
        return False


@dataclass
class AccumulatorConfig:
    """Configuration for the commitment accumulator."""
    depth: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=32,
        env_var="SHIELDPOOL_TREE_DEPTH",
        description="Commitment tree depth (capacity 2^depth leaves)",
        validator=lambda x: 1 <= x <= 64,
    ))
    recent_cache_size: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=128,
        env_var="SHIELDPOOL_TREE_RECENT_CACHE",
        description="Recent-leaf cache capacity",
        validator=lambda x: 0 < x <= 128,
    ))


@dataclass
class LedgerConfig:
    """Configuration for the pool ledger and rate limiting."""
    root_history_size: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=16,
        env_var="SHIELDPOOL_ROOT_HISTORY",
        description="Number of recent roots accepted as anchors",
        validator=lambda x: x > 0,
    ))
    shield_min_interval_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=4.0,
        env_var="SHIELDPOOL_SHIELD_INTERVAL",
        description="Minimum seconds between shield operations",
        validator=lambda x: x >= 0,
    ))
    unshield_min_interval_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=4.0,
        env_var="SHIELDPOOL_UNSHIELD_INTERVAL",
        description="Minimum seconds between unshield operations",
        validator=lambda x: x >= 0,
    ))
    transfer_min_interval_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=2.0,
        env_var="SHIELDPOOL_TRANSFER_INTERVAL",
        description="Minimum seconds between transfer operations (each of transfer and transfer_from)",
        validator=lambda x: x >= 0,
    ))


@dataclass
class VaultConfig:
    """Configuration for operation vaults."""
    min_amount: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1,
        env_var="SHIELDPOOL_MIN_AMOUNT",
        description="Minimum operation amount in base units",
        validator=lambda x: x >= 1,
    ))
    max_amount: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=(1 << 64) - 1,
        env_var="SHIELDPOOL_MAX_AMOUNT",
        description="Maximum operation amount in base units",
        validator=lambda x: 1 <= x <= (1 << 64) - 1,
    ))
    max_batch_size: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3,
        env_var="SHIELDPOOL_MAX_BATCH",
        description="Maximum operations per atomic batch",
        validator=lambda x: x > 0,
    ))
    max_proof_size: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1024,
        env_var="SHIELDPOOL_MAX_PROOF_SIZE",
        description="Maximum accepted proof size in bytes",
        validator=lambda x: 64 <= x <= 1024,
    ))
    max_public_inputs_size: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=512,
        env_var="SHIELDPOOL_MAX_PUBLIC_INPUTS",
        description="Maximum public inputs size in bytes",
        validator=lambda x: 32 <= x <= 512 and x % 32 == 0,
    ))


@dataclass
class VerifierConfig:
    """Configuration for proof verification."""
    strategy: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="groth16",
        env_var="SHIELDPOOL_VERIFIER",
        description="Verification strategy (groth16, attestation)",
        validator=lambda x: x in ("groth16", "attestation"),
    ))
    attestation_max_age_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=300,
        env_var="SHIELDPOOL_ATTESTATION_MAX_AGE",
        description="Attestation freshness window in seconds",
        validator=lambda x: x > 0,
    ))
    trusted_signer_public_key: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="SHIELDPOOL_TRUSTED_SIGNER",
        description="Hex Ed25519 public key of the trusted attestor",
        validator=_is_hex32_or_empty,
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for Observability."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="SHIELDPOOL_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="SHIELDPOOL_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class ShieldPoolConfig:
    """
    Root configuration for the shielded pool.

    Aggregates all component configurations and provides
    loading/saving functionality.
    """
    accumulator: AccumulatorConfig = field(default_factory=AccumulatorConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    vault: VaultConfig = field(default_factory=VaultConfig)
    verifier: VerifierConfig = field(default_factory=VerifierConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        """Convert to YAML string."""
        return yaml.dump(self.to_dict(), default_flow_style=False)


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

        self._config = ShieldPoolConfig()
        self._config_paths: List[Path] = []
        self._watchers: List[Callable[[ShieldPoolConfig], None]] = []
        self._initialized = True

    @property
    def config(self) -> ShieldPoolConfig:
        """Get the current configuration."""
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f)

        if data:
            if not isinstance(data, dict):
                raise ConfigError(f"Configuration file must contain a mapping: {path}")
            self._apply_dict(data)
            if path not in self._config_paths:
                self._config_paths.append(path)
            logger.info("Configuration loaded", path=str(path))

    def load_defaults(self) -> None:
        """Load default configuration files if they exist."""
        default_paths = [
            Path("shieldpool.yaml"),
            Path("config/shieldpool.yaml"),
            Path.home() / ".shieldpool" / "config.yaml",
        ]

        for path in default_paths:
            if path.exists():
                self.load_from_file(path)

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply dictionary values to configuration."""
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                if not hasattr(config_obj, key):
                    logger.warning("Unknown configuration key ignored", key=f"{prefix}{key}")
                    continue
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, f"{prefix}{key}.")

        apply_to_config(self._config, data, "")

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("vault.max_batch_size", 2)
        """
        attr = self._resolve(path)
        if isinstance(attr, ConfigValue):
            attr.set(value)
        else:
            raise ConfigError(f"Invalid config path: {path}")

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("accumulator.depth")
        """
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def watch(self, callback: Callable[[ShieldPoolConfig], None]) -> None:
        """Register a callback for configuration changes."""
        self._watchers.append(callback)

    def reload(self) -> None:
        """Reload configuration from all loaded files."""
        for path in self._config_paths:
            if path.exists():
                self.load_from_file(path)

        for watcher in self._watchers:
            watcher(self._config)

    def reset(self) -> None:
        """Restore defaults and forget loaded files and watchers."""
        self._config = ShieldPoolConfig()
        self._config_paths = []
        self._watchers = []

    def validate(self) -> List[str]:
        """
        Validate all configuration values.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value}")
                except ConfigError as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)

        vault = self._config.vault
        if not errors and vault.min_amount.get() > vault.max_amount.get():
            errors.append("vault.min_amount: exceeds vault.max_amount")
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


def get_config() -> ShieldPoolConfig:
    """Get the current shielded pool configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()
