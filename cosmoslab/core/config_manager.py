"""
Configuration management for CosmosLab.

Handles loading, validation, and access to configuration settings.
"""

import os
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional
from enum import Enum

import yaml
from pydantic import BaseModel, Field, field_validator, ValidationError, ConfigDict

from .models import ConnectionConfig, ResourceIdentity

logger = logging.getLogger(__name__)


class LogLevel(str, Enum):
    """Valid log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: LogLevel = LogLevel.INFO
    format: str = "text"
    file: Optional[str] = None
    rotation_size: str = "10MB"
    rotation_count: int = 5
    module_levels: Optional[Dict[str, str]] = Field(
        default=None,
        description="Per-module log levels, e.g., {'cosmoslab.core.prober': 'DEBUG'}"
    )


class ProbeSettings(BaseModel):
    """Connectivity probe budget."""
    max_attempts: int = Field(default=10, ge=1)
    delay: float = Field(default=3.0, ge=0.0, description="Fixed delay between attempts in seconds")


class WorkloadConfig(BaseModel):
    """Representative workload run after provisioning."""
    batch: bool = True
    batch_size: int = Field(default=5, ge=1, le=100)


class EmulatorConfig(BaseModel):
    """Cosmos DB emulator container settings."""
    image: str = "mcr.microsoft.com/cosmosdb/linux/azure-cosmos-emulator:vnext-preview"
    container_name: str = "cosmoslab-emulator"
    gateway_port: int = Field(default=8081, ge=1, le=65535)
    protocol: str = "https"
    data_explorer: bool = True
    data_explorer_port: int = Field(default=1234, ge=1, le=65535)
    data_volume: Optional[str] = Field(
        default=None,
        description="Named Docker volume for emulator data; data survives container restarts"
    )
    persistent: bool = Field(
        default=False,
        description="Leave the container running on teardown and reuse it on the next start"
    )

    @field_validator("protocol")
    @classmethod
    def validate_protocol(cls, v: str) -> str:
        """Emulator gateway speaks http or https."""
        v = v.lower()
        if v not in ("http", "https"):
            raise ValueError("Protocol must be 'http' or 'https'")
        return v


class ApiConfig(BaseModel):
    """REST façade configuration."""
    host: str = "127.0.0.1"
    port: int = 5080
    resource: ResourceIdentity = Field(
        default_factory=lambda: ResourceIdentity(
            database_name="SampleDB",
            container_name="Items",
            partition_key_path="/id",
        )
    )


class CosmosLabConfig(BaseModel):
    """Main CosmosLab configuration schema."""

    version: str = Field(default="0.1.0", description="Configuration version")

    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)

    resource: ResourceIdentity = Field(default_factory=ResourceIdentity)

    probe: ProbeSettings = Field(default_factory=ProbeSettings)

    workload: WorkloadConfig = Field(default_factory=WorkloadConfig)

    emulator: EmulatorConfig = Field(default_factory=EmulatorConfig)

    api: ApiConfig = Field(default_factory=ApiConfig)

    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Validate version format."""
        parts = v.split(".")
        if len(parts) != 3:
            raise ValueError("Version must be in format x.y.z")
        for part in parts:
            if not part.isdigit():
                raise ValueError("Version components must be numeric")
        return v

    model_config = ConfigDict(use_enum_values=True)


def _env_flag(value: str) -> bool:
    return value.lower() in ['true', '1', 'yes']


class ConfigManager:
    """
    Manages CosmosLab configuration loading and validation.

    Configuration precedence (highest to lowest):
    1. CLI arguments
    2. Environment variables (COSMOSLAB_*)
    3. Configuration file (YAML/JSON)
    4. Defaults
    """

    def __init__(self):
        self._config: Optional[CosmosLabConfig] = None
        self._config_file: Optional[Path] = None

    def load(
        self,
        config_file: Optional[str] = None,
        cli_overrides: Optional[Dict[str, Any]] = None
    ) -> CosmosLabConfig:
        """
        Load and validate configuration from multiple sources.

        Args:
            config_file: Path to configuration file (YAML or JSON)
            cli_overrides: Dictionary of CLI argument overrides

        Returns:
            Validated CosmosLabConfig instance

        Raises:
            ValidationError: If configuration is invalid
            FileNotFoundError: If specified config file doesn't exist
        """
        logger.debug("Loading CosmosLab configuration")

        config_dict: Dict[str, Any] = {}

        if config_file:
            config_dict = self._load_from_file(config_file)
            self._expand_connection_string(config_dict)
            self._config_file = Path(config_file)
            logger.info(f"Loaded configuration from file: {config_file}")

        env_config = self._load_from_env()
        self._expand_connection_string(env_config)
        config_dict = self._merge_configs(config_dict, env_config)
        if env_config:
            logger.debug(f"Applied {len(env_config)} environment variable overrides")

        if cli_overrides:
            cli_overrides = dict(cli_overrides)
            self._expand_connection_string(cli_overrides)
            config_dict = self._merge_configs(config_dict, cli_overrides)
            logger.debug(f"Applied {len(cli_overrides)} CLI argument overrides")

        try:
            self._config = CosmosLabConfig(**config_dict)
            logger.debug("Configuration validated successfully")
            self._log_configuration()
            return self._config
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e}")
            raise

    def _load_from_file(self, file_path: str) -> Dict[str, Any]:
        """Load configuration from YAML or JSON file."""
        path = Path(file_path)

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {file_path}")

        with open(path, 'r') as f:
            if path.suffix in ['.yaml', '.yml']:
                return yaml.safe_load(f) or {}
            elif path.suffix == '.json':
                return json.load(f)
            else:
                raise ValueError(f"Unsupported config file format: {path.suffix}")

    def _load_from_env(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        config: Dict[str, Any] = {}

        # Connection
        if connection_string := os.getenv("COSMOSLAB_CONNECTION_STRING"):
            config.setdefault("connection", {})["connection_string"] = connection_string
        if endpoint := os.getenv("COSMOSLAB_ENDPOINT"):
            config.setdefault("connection", {})["endpoint"] = endpoint
        if key := os.getenv("COSMOSLAB_KEY"):
            config.setdefault("connection", {})["credential"] = key
        if insecure := os.getenv("COSMOSLAB_INSECURE_TLS"):
            config.setdefault("connection", {})["allow_insecure_tls"] = _env_flag(insecure)
        if transport_mode := os.getenv("COSMOSLAB_TRANSPORT_MODE"):
            config.setdefault("connection", {})["transport_mode"] = transport_mode.lower()

        # Resource identity
        if database := os.getenv("COSMOSLAB_DATABASE"):
            config.setdefault("resource", {})["database_name"] = database
        if container := os.getenv("COSMOSLAB_CONTAINER"):
            config.setdefault("resource", {})["container_name"] = container
        if pk_path := os.getenv("COSMOSLAB_PARTITION_KEY_PATH"):
            config.setdefault("resource", {})["partition_key_path"] = pk_path

        # Probe
        if attempts := os.getenv("COSMOSLAB_PROBE_ATTEMPTS"):
            config.setdefault("probe", {})["max_attempts"] = int(attempts)
        if delay := os.getenv("COSMOSLAB_PROBE_DELAY"):
            config.setdefault("probe", {})["delay"] = float(delay)

        # Logging
        if log_level := os.getenv("COSMOSLAB_LOG_LEVEL"):
            config.setdefault("logging", {})["level"] = log_level.upper()
        if log_file := os.getenv("COSMOSLAB_LOG_FILE"):
            config.setdefault("logging", {})["file"] = log_file

        # Emulator
        if emulator_port := os.getenv("COSMOSLAB_EMULATOR_PORT"):
            config.setdefault("emulator", {})["gateway_port"] = int(emulator_port)
        if persistent := os.getenv("COSMOSLAB_EMULATOR_PERSISTENT"):
            config.setdefault("emulator", {})["persistent"] = _env_flag(persistent)

        return config

    def _expand_connection_string(self, config_dict: Dict[str, Any]) -> None:
        """Replace ``connection.connection_string`` with endpoint and credential.

        Applied to each layer before merging; explicit endpoint/credential values
        in the same layer win over its connection string.
        """
        connection = config_dict.get("connection")
        if not isinstance(connection, dict) or "connection_string" not in connection:
            return

        connection = dict(connection)
        config_dict["connection"] = connection
        parsed = ConnectionConfig.from_connection_string(connection.pop("connection_string"))
        connection.setdefault("endpoint", parsed.endpoint)
        connection.setdefault("credential", parsed.credential.get_secret_value())

    def _merge_configs(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two configuration dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value

        return result

    def _log_configuration(self) -> None:
        """Log the loaded configuration (SecretStr fields are masked by pydantic)."""
        if not self._config:
            return

        logger.debug(f"Active configuration: {json.dumps(self.dump(), indent=2)}")

    def dump(self) -> Dict[str, Any]:
        """JSON-safe view of the active configuration with secrets masked."""
        return self.get_config().model_dump(mode="json")

    def get_config(self) -> CosmosLabConfig:
        """
        Get the loaded configuration.

        Returns:
            CosmosLabConfig instance

        Raises:
            RuntimeError: If configuration hasn't been loaded
        """
        if self._config is None:
            raise RuntimeError("Configuration not loaded. Call load() first.")
        return self._config

    def reload(self) -> CosmosLabConfig:
        """Reload configuration from the same sources."""
        config_file = str(self._config_file) if self._config_file else None
        return self.load(config_file=config_file)
