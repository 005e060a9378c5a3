"""
Azure Cosmos DB SDK client.

Adapts `azure.cosmos.CosmosClient` to the `DatabaseClient` contract and
translates SDK and transport exceptions into `ServiceError`.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional

from azure.core.exceptions import AzureError, ServiceRequestError, ServiceResponseError
from azure.cosmos import CosmosClient, PartitionKey
from azure.cosmos import exceptions as cosmos_exceptions

from cosmoslab.core.models import ConnectionConfig, TransportMode
from .base import (
    BatchError,
    ContainerRef,
    DatabaseClient,
    ServiceError,
    transport_code,
    validate_item,
)

logger = logging.getLogger(__name__)

ACTIVITY_ID_HEADER = "x-ms-activity-id"
REQUEST_CHARGE_HEADER = "x-ms-request-charge"


def _parse_charge(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@contextmanager
def _translate_errors(operation: str):
    """Re-raise SDK exceptions as `ServiceError`."""
    try:
        yield
    except cosmos_exceptions.CosmosBatchOperationError as e:
        headers = getattr(e, "headers", None) or {}
        raise BatchError(
            getattr(e, "message", None) or str(e),
            failed_index=getattr(e, "error_index", None),
            status_code=getattr(e, "status_code", None),
            activity_id=headers.get(ACTIVITY_ID_HEADER),
            request_charge=_parse_charge(headers.get(REQUEST_CHARGE_HEADER)),
            operation=operation,
        ) from e
    except cosmos_exceptions.CosmosHttpResponseError as e:
        headers = getattr(e, "headers", None) or {}
        raise ServiceError(
            e.message or str(e),
            status_code=e.status_code,
            sub_status=getattr(e, "sub_status", None),
            activity_id=headers.get(ACTIVITY_ID_HEADER),
            request_charge=_parse_charge(headers.get(REQUEST_CHARGE_HEADER)),
            operation=operation,
        ) from e
    except (ServiceRequestError, ServiceResponseError) as e:
        raise ServiceError(
            str(e),
            transport_code=transport_code(e),
            operation=operation,
        ) from e
    except AzureError as e:
        status_code = getattr(e, "status_code", None)
        raise ServiceError(
            getattr(e, "message", None) or str(e),
            status_code=status_code if isinstance(status_code, int) else None,
            operation=operation,
        ) from e


class CosmosSdkClient(DatabaseClient):
    """
    `DatabaseClient` backed by the Azure Cosmos DB Python SDK.

    The underlying `CosmosClient` performs a network round trip in its
    constructor, so it is created lazily on first use. Construction failures
    then surface as ordinary `ServiceError`s inside the caller's retry loop.
    """

    def __init__(self, config: ConnectionConfig):
        """
        Initialize the client.

        Args:
            config: Connection configuration
        """
        self.config = config
        self._client: Optional[CosmosClient] = None

        if config.transport_mode == TransportMode.DIRECT:
            logger.warning(
                "Direct transport mode requested but the Python SDK only supports "
                "Gateway mode; continuing with Gateway"
            )
        if config.allow_insecure_tls:
            logger.warning(f"TLS certificate validation disabled for {config.endpoint}")

    def _get_client(self) -> CosmosClient:
        if self._client is None:
            logger.debug(f"Creating Cosmos DB client for {self.config.endpoint}")
            self._client = CosmosClient(
                url=self.config.endpoint,
                credential=self.config.credential.get_secret_value(),
                connection_verify=not self.config.allow_insecure_tls,
                connection_timeout=max(1, round(self.config.timeout)),
                enable_endpoint_discovery=False,
            )
        return self._client

    def _container(self, container: ContainerRef):
        return (
            self._get_client()
            .get_database_client(container.database_name)
            .get_container_client(container.container_name)
        )

    def read_account_metadata(self) -> Dict[str, Any]:
        with _translate_errors("read_account_metadata"):
            account = self._get_client().get_database_account()
            return {
                "writable_locations": account.WritableLocations,
                "readable_locations": account.ReadableLocations,
                "consistency_policy": account.ConsistencyPolicy,
            }

    def read_database(self, name: str) -> Dict[str, Any]:
        with _translate_errors("read_database"):
            return self._get_client().get_database_client(name).read()

    def create_database(self, name: str) -> Dict[str, Any]:
        with _translate_errors("create_database"):
            database = self._get_client().create_database(id=name)
            return {"id": database.id}

    def delete_database(self, name: str) -> None:
        with _translate_errors("delete_database"):
            self._get_client().delete_database(name)

    def read_container(self, database_name: str, container_name: str) -> ContainerRef:
        with _translate_errors("read_container"):
            properties = (
                self._get_client()
                .get_database_client(database_name)
                .get_container_client(container_name)
                .read()
            )
        paths = properties.get("partitionKey", {}).get("paths") or ["/id"]
        return ContainerRef(database_name, container_name, paths[0])

    def create_container(
        self,
        database_name: str,
        container_name: str,
        partition_key_path: str
    ) -> ContainerRef:
        with _translate_errors("create_container"):
            self._get_client().get_database_client(database_name).create_container(
                id=container_name,
                partition_key=PartitionKey(path=partition_key_path),
            )
        return ContainerRef(database_name, container_name, partition_key_path)

    def create_item(
        self,
        container: ContainerRef,
        item: Dict[str, Any],
        partition_key_value: Any
    ) -> Dict[str, Any]:
        validate_item(item, container.partition_key_path, partition_key_value)
        with _translate_errors("create_item"):
            return self._container(container).create_item(body=item)

    def read_item(self, container: ContainerRef, item_id: str, partition_key_value: Any) -> Dict[str, Any]:
        with _translate_errors("read_item"):
            return self._container(container).read_item(item=item_id, partition_key=partition_key_value)

    def delete_item(self, container: ContainerRef, item_id: str, partition_key_value: Any) -> None:
        with _translate_errors("delete_item"):
            self._container(container).delete_item(item=item_id, partition_key=partition_key_value)

    def query_items(
        self,
        container: ContainerRef,
        query: str,
        parameters: Optional[List[Dict[str, Any]]] = None,
        partition_key_value: Optional[Any] = None,
    ) -> Iterator[Dict[str, Any]]:
        kwargs: Dict[str, Any] = {"query": query, "parameters": parameters or []}
        if partition_key_value is None:
            kwargs["enable_cross_partition_query"] = True
        else:
            kwargs["partition_key"] = partition_key_value

        with _translate_errors("query_items"):
            pages = self._container(container).query_items(**kwargs)
        return self._iterate("query_items", pages)

    def _iterate(self, operation: str, iterable: Iterable[Dict[str, Any]]) -> Iterator[Dict[str, Any]]:
        # Pages are fetched while iterating, so errors surface here
        with _translate_errors(operation):
            for item in iterable:
                yield item

    def create_items_batch(
        self,
        container: ContainerRef,
        items: List[Dict[str, Any]],
        partition_key_value: Any
    ) -> List[Dict[str, Any]]:
        for item in items:
            validate_item(item, container.partition_key_path, partition_key_value)

        operations = [("create", (item,)) for item in items]
        with _translate_errors("create_items_batch"):
            results = self._container(container).execute_item_batch(
                batch_operations=operations,
                partition_key=partition_key_value,
            )
        return [result.get("resourceBody", {}) for result in results]

    @property
    def last_request_charge(self) -> Optional[float]:
        if self._client is None:
            return None
        headers = getattr(self._client.client_connection, "last_response_headers", None) or {}
        return _parse_charge(headers.get(REQUEST_CHARGE_HEADER))

    def close(self) -> None:
        if self._client is not None:
            self._client.__exit__(None, None, None)
            self._client = None
