"""
Items API routes.

A small CRUD façade over one container, plus a health check that verifies the
database and container can be provisioned. The client and resource identity
are read from ``app.state`` so tests can swap in the in-memory client.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse

from cosmoslab.client.base import ContainerRef, DatabaseClient, ServiceError
from cosmoslab.core.diagnostics import classify
from cosmoslab.core.models import ResourceIdentity
from cosmoslab.core.provisioner import ResourceProvisioner
from .models import HealthStatus, TodoItem

logger = logging.getLogger(__name__)

router = APIRouter(tags=["items"])


def get_client(request: Request) -> DatabaseClient:
    return request.app.state.client


def get_resource(request: Request) -> ResourceIdentity:
    return request.app.state.resource


def _container(resource: ResourceIdentity) -> ContainerRef:
    return ContainerRef(resource.database_name, resource.container_name, resource.partition_key_path)


def _problem(action: str, error: Exception) -> JSONResponse:
    record = classify(error)
    logger.error(f"Error {action}: {record.message}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": f"Error {action}: {record.message}", "category": record.category.value},
    )


def _not_found(item_id: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Item '{item_id}' not found")


@router.get("/api/items")
def list_items(
    client: DatabaseClient = Depends(get_client),
    resource: ResourceIdentity = Depends(get_resource),
) -> Any:
    """Return every item in the container (cross-partition)."""
    try:
        items: List[Dict[str, Any]] = list(client.query_items(_container(resource), "SELECT * FROM c"))
    except ServiceError as e:
        return _problem("retrieving items", e)
    return items


@router.get("/api/items/{item_id}")
def get_item(
    item_id: str,
    client: DatabaseClient = Depends(get_client),
    resource: ResourceIdentity = Depends(get_resource),
) -> Any:
    """Return one item; the item id doubles as its partition key value."""
    try:
        return client.read_item(_container(resource), item_id, item_id)
    except ServiceError as e:
        if e.status_code == status.HTTP_404_NOT_FOUND:
            raise _not_found(item_id)
        return _problem("retrieving item", e)


@router.post("/api/items", status_code=status.HTTP_201_CREATED)
def create_item(
    response: Response,
    client: DatabaseClient = Depends(get_client),
    resource: ResourceIdentity = Depends(get_resource),
) -> Any:
    """Ensure the database and container exist, then create a sample item."""
    item = TodoItem().model_dump(mode="json", by_alias=True)

    # Partition on the item id whatever the path is, so GET/DELETE can address it
    target = item
    segments = resource.partition_key_segments
    for segment in segments[:-1]:
        target = target.setdefault(segment, {})
    target[segments[-1]] = item["id"]

    try:
        ResourceProvisioner(client).ensure(resource)
        created = client.create_item(_container(resource), item, item["id"])
    except ServiceError as e:
        return _problem("creating item", e)

    response.headers["Location"] = f"/api/items/{item['id']}"
    logger.info(f"Created item {item['id']}")
    return created


@router.delete("/api/items/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_item(
    item_id: str,
    client: DatabaseClient = Depends(get_client),
    resource: ResourceIdentity = Depends(get_resource),
) -> Response:
    """Delete one item."""
    try:
        client.delete_item(_container(resource), item_id, item_id)
    except ServiceError as e:
        if e.status_code == status.HTTP_404_NOT_FOUND:
            raise _not_found(item_id)
        return _problem("deleting item", e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/health", response_model=HealthStatus, response_model_exclude_none=True)
def health(
    client: DatabaseClient = Depends(get_client),
    resource: ResourceIdentity = Depends(get_resource),
) -> Any:
    """Verify Cosmos DB connectivity by ensuring the database and container exist."""
    now = datetime.now(timezone.utc)
    try:
        ResourceProvisioner(client).ensure(resource)
    except (ServiceError, OSError) as e:
        record = classify(e)
        logger.warning(f"Health check failed ({record.category.value}): {record.message}")
        body = HealthStatus(
            status="Unhealthy",
            database=resource.database_name,
            timestamp=now,
            detail=f"Unhealthy: {record.message}",
            category=record.category.value,
        )
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=body.model_dump(mode="json", exclude_none=True),
        )

    return HealthStatus(status="Healthy", database=resource.database_name, timestamp=now)
