"""
Database client contract.

Every client implementation raises `ServiceError` (never SDK-specific
exceptions) so the classifier only has to understand one shape of failure.
"""

import errno
import ssl
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional


class ServiceError(Exception):
    """Failure reported by the remote service or the transport below it.

    Attributes:
        message: Error message
        status_code: HTTP status returned by the service (None for transport failures)
        sub_status: Cosmos DB sub-status code
        activity_id: Service activity id for support correlation
        request_charge: Request units charged for the failed request
        transport_code: Structured transport failure code (e.g. ``ECONNREFUSED``)
        operation: Client operation that failed
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        sub_status: Optional[int] = None,
        activity_id: Optional[str] = None,
        request_charge: Optional[float] = None,
        transport_code: Optional[str] = None,
        operation: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.sub_status = sub_status
        self.activity_id = activity_id
        self.request_charge = request_charge
        self.transport_code = transport_code
        self.operation = operation

    @property
    def is_transport_failure(self) -> bool:
        """True when the request never got a service response."""
        return self.status_code is None and self.transport_code is not None

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(status_code={self.status_code!r}, "
            f"transport_code={self.transport_code!r}, message={self.message!r})"
        )


class BatchError(ServiceError):
    """A transactional batch was rejected; no item in it was written."""

    def __init__(self, message: str, failed_index: Optional[int] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.failed_index = failed_index


@dataclass(frozen=True)
class ContainerRef:
    """Handle on a container that is known to exist."""
    database_name: str
    container_name: str
    partition_key_path: str


def partition_value(item: Dict[str, Any], partition_key_path: str) -> Any:
    """
    Read the partition key value out of an item.

    Args:
        item: Item payload
        partition_key_path: Partition key path (e.g. "/emailAddress")

    Returns:
        Partition key value

    Raises:
        ValueError: If the item has no value at the partition key path
    """
    value: Any = item
    for segment in partition_key_path.lstrip("/").split("/"):
        if not isinstance(value, dict) or segment not in value:
            raise ValueError(f"Item has no value for partition key '{partition_key_path}'")
        value = value[segment]
    return value


def validate_item(item: Dict[str, Any], partition_key_path: str, partition_key_value: Any) -> None:
    """Check the fields the client relies on: ``id`` and the partition attribute."""
    if not isinstance(item.get("id"), str) or not item["id"]:
        raise ValueError("Item must have a non-empty string 'id'")
    actual = partition_value(item, partition_key_path)
    if actual != partition_key_value:
        raise ValueError(
            f"Partition key mismatch for item '{item['id']}': "
            f"item has {actual!r}, request has {partition_key_value!r}"
        )


def transport_code(exc: BaseException) -> str:
    """
    Find a structured code for a transport failure.

    Walks the exception chain (azure-core ``inner_exception``, ``__cause__``,
    ``__context__``) looking for the underlying socket or TLS error.

    Args:
        exc: Transport exception

    Returns:
        ``SSL``, ``TIMEOUT``, an errno name such as ``ECONNREFUSED``,
        or ``TRANSPORT`` when nothing more specific is found
    """
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, ssl.SSLError):
            return "SSL"
        if isinstance(current, OSError) and current.errno:
            return errno.errorcode.get(current.errno, str(current.errno))
        if isinstance(current, TimeoutError):
            return "TIMEOUT"
        current = (
            getattr(current, "inner_exception", None)
            or current.__cause__
            or current.__context__
        )
    return "TRANSPORT"


class DatabaseClient(ABC):
    """
    Operations the core needs from a Cosmos DB account.

    Implementations raise `ServiceError` for every failure that comes from
    the service or the network. Status 404 means the target does not exist,
    409 means it already does.
    """

    @abstractmethod
    def read_account_metadata(self) -> Dict[str, Any]:
        """Lightweight read-only round trip used for connectivity probing."""

    @abstractmethod
    def read_database(self, name: str) -> Dict[str, Any]:
        """Read database properties."""

    @abstractmethod
    def create_database(self, name: str) -> Dict[str, Any]:
        """Create a database."""

    @abstractmethod
    def delete_database(self, name: str) -> None:
        """Delete a database and everything in it."""

    @abstractmethod
    def read_container(self, database_name: str, container_name: str) -> ContainerRef:
        """Read container properties."""

    @abstractmethod
    def create_container(
        self,
        database_name: str,
        container_name: str,
        partition_key_path: str
    ) -> ContainerRef:
        """Create a container partitioned on ``partition_key_path``."""

    @abstractmethod
    def create_item(
        self,
        container: ContainerRef,
        item: Dict[str, Any],
        partition_key_value: Any
    ) -> Dict[str, Any]:
        """Create one item."""

    @abstractmethod
    def read_item(self, container: ContainerRef, item_id: str, partition_key_value: Any) -> Dict[str, Any]:
        """Read one item by id and partition key value."""

    @abstractmethod
    def delete_item(self, container: ContainerRef, item_id: str, partition_key_value: Any) -> None:
        """Delete one item."""

    @abstractmethod
    def query_items(
        self,
        container: ContainerRef,
        query: str,
        parameters: Optional[List[Dict[str, Any]]] = None,
        partition_key_value: Optional[Any] = None,
    ) -> Iterator[Dict[str, Any]]:
        """
        Run a SQL query. Results are produced lazily.

        Args:
            container: Target container
            query: Query text, passed through unchanged
            parameters: ``[{"name": "@p", "value": ...}]``
            partition_key_value: Restrict to one partition (None = cross-partition)
        """

    @abstractmethod
    def create_items_batch(
        self,
        container: ContainerRef,
        items: List[Dict[str, Any]],
        partition_key_value: Any
    ) -> List[Dict[str, Any]]:
        """
        Create several items in one transactional batch.

        All items share ``partition_key_value``; either every item is written
        or none is and `BatchError` is raised.
        """

    @property
    def last_request_charge(self) -> Optional[float]:
        """Request units charged by the most recent successful call, if known."""
        return None

    def close(self) -> None:
        """Release network resources."""

    def __enter__(self) -> "DatabaseClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
