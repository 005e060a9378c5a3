"""Core module initialization."""

from .models import (
    ConnectionConfig,
    ResourceIdentity,
    TransportMode,
    ErrorCategory,
    ErrorRecord,
    ExitCode,
    DriverState,
    ProbeOutcome,
    ProvisioningResult,
    DiagnosticContext,
)
from .config_manager import ConfigManager, CosmosLabConfig
from .logging_config import setup_logging, get_logger
from .diagnostics import DiagnosticReporter, WorkloadError, classify
from .prober import ConnectivityProber
from .provisioner import ResourceProvisioner
from .driver import OperationDriver

__all__ = [
    "ConnectionConfig",
    "ResourceIdentity",
    "TransportMode",
    "ErrorCategory",
    "ErrorRecord",
    "ExitCode",
    "DriverState",
    "ProbeOutcome",
    "ProvisioningResult",
    "DiagnosticContext",
    "ConfigManager",
    "CosmosLabConfig",
    "setup_logging",
    "get_logger",
    "DiagnosticReporter",
    "WorkloadError",
    "classify",
    "ConnectivityProber",
    "ResourceProvisioner",
    "OperationDriver",
]
