"""Cosmos DB client implementations."""

from .base import BatchError, ContainerRef, DatabaseClient, ServiceError, partition_value
from .memory import InMemoryDatabaseClient

__all__ = [
    "BatchError",
    "ContainerRef",
    "DatabaseClient",
    "ServiceError",
    "partition_value",
    "InMemoryDatabaseClient",
]
