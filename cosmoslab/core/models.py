"""
Value types shared by the prober, provisioner, classifier and driver.

Configuration-facing types (`ConnectionConfig`, `ResourceIdentity`) are frozen
pydantic models so they can be loaded from files and environment variables;
the per-run records are plain dataclasses.
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


# Well-known key published for the local Cosmos DB emulator
EMULATOR_KEY = "C2y6yDjf5/R+ob0N8A7Cgv30VRDJIWEHLM+4QDU5DE2nQ9nDuVTqobD4b8mGGyPMbIZnqyMsEcaGQy67XIw/Jw=="
EMULATOR_ENDPOINT = "https://localhost:8081/"


class TransportMode(str, Enum):
    """Connection modes understood by Cosmos DB clients."""
    GATEWAY = "gateway"
    DIRECT = "direct"


class ConnectionConfig(BaseModel):
    """How to reach the Cosmos DB endpoint. Built once per run."""

    model_config = ConfigDict(frozen=True)

    endpoint: str = EMULATOR_ENDPOINT
    credential: SecretStr = SecretStr(EMULATOR_KEY)
    transport_mode: TransportMode = TransportMode.GATEWAY
    timeout: float = Field(default=30.0, gt=0.0, description="Request timeout in seconds")
    allow_insecure_tls: bool = Field(
        default=True,
        description="Skip certificate validation (self-signed emulator certificates)"
    )

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        """Require an absolute http(s) URL."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("Endpoint must start with http:// or https://")
        return v

    @classmethod
    def from_connection_string(cls, connection_string: str, **overrides) -> "ConnectionConfig":
        """
        Build a config from an ``AccountEndpoint=...;AccountKey=...;`` string.

        Args:
            connection_string: Cosmos DB connection string
            **overrides: Additional field values (timeout, allow_insecure_tls, ...)

        Returns:
            ConnectionConfig instance

        Raises:
            ValueError: If the endpoint or key is missing
        """
        parts: Dict[str, str] = {}
        for segment in connection_string.split(";"):
            if "=" not in segment:
                continue
            # Keys contain '=' padding, so only split on the first one
            name, value = segment.split("=", 1)
            parts[name.strip().lower()] = value.strip()

        endpoint = parts.get("accountendpoint")
        key = parts.get("accountkey")
        if not endpoint or not key:
            raise ValueError("Connection string must contain AccountEndpoint and AccountKey")

        return cls(endpoint=endpoint, credential=SecretStr(key), **overrides)


class ResourceIdentity(BaseModel):
    """Names a database, a container and its partition key path."""

    model_config = ConfigDict(frozen=True)

    database_name: str = "MyDb"
    container_name: str = "Users"
    partition_key_path: str = "/emailAddress"
    item_id_prefix: str = Field(
        default="cosmoslab",
        description="Namespace prepended to every item id written by the workload"
    )

    @field_validator("database_name", "container_name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate resource names."""
        if not v or not v.strip():
            raise ValueError("Resource name cannot be empty")
        if len(v) > 255:
            raise ValueError("Resource name cannot exceed 255 characters")
        for ch in ("/", "\\", "?", "#"):
            if ch in v:
                raise ValueError(f"Resource name cannot contain '{ch}'")
        return v

    @field_validator("partition_key_path")
    @classmethod
    def validate_partition_key_path(cls, v: str) -> str:
        """Partition key paths look like ``/field`` or ``/outer/inner``."""
        if not v.startswith("/"):
            raise ValueError(f"Partition key path must start with '/': {v}")
        if any(not segment for segment in v[1:].split("/")):
            raise ValueError(f"Partition key path has an empty segment: {v}")
        return v

    @property
    def partition_key_segments(self) -> List[str]:
        """Path segments of the partition key, e.g. ``['address', 'zip']``."""
        return self.partition_key_path[1:].split("/")

    @property
    def partition_attribute(self) -> str:
        """Dotted attribute name used in queries (``c.<attribute>``)."""
        return ".".join(self.partition_key_segments)


class ErrorCategory(str, Enum):
    """Closed set of failure categories."""
    TRANSIENT = "transient"
    NOT_FOUND = "not_found"
    SCHEMA_MISSING_DEFECT = "schema_missing_defect"
    UNKNOWN = "unknown"


class ExitCode(IntEnum):
    """Process exit codes reported to CI."""
    SUCCESS = 0
    FAILURE = 1
    SCHEMA_MISSING_DEFECT = 3


class DriverState(str, Enum):
    """Operation driver states."""
    INIT = "init"
    PROBING = "probing"
    PROVISIONING = "provisioning"
    INSERTING = "inserting"
    QUERYING = "querying"
    BATCHING = "batching"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class ErrorRecord:
    """Classified failure, reported once and then discarded."""
    category: ErrorCategory
    message: str
    status_code: Optional[int] = None
    activity_id: Optional[str] = None
    request_charge: Optional[float] = None
    transport_code: Optional[str] = None


@dataclass(frozen=True)
class ProbeOutcome:
    """Result of one probing session."""
    succeeded: bool
    attempts_used: int
    last_error: Optional[ErrorRecord] = None


@dataclass(frozen=True)
class ProvisioningResult:
    """What the provisioner found versus created."""
    database_existed: bool
    container_existed: bool


@dataclass(frozen=True)
class DiagnosticContext:
    """Where a failure happened, for the operator."""
    endpoint: str
    database_id: str
    container_id: str
    state: Optional[DriverState] = None
