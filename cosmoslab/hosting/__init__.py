"""Hosting harness for the Cosmos DB emulator."""

from .docker_manager import DockerManager, DockerConfig, ContainerState
from .emulator import EmulatorHost, HostingError

__all__ = [
    "DockerManager",
    "DockerConfig",
    "ContainerState",
    "EmulatorHost",
    "HostingError",
]
