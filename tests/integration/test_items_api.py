"""
Integration tests for the items REST API.

The app runs against the in-memory client, so these exercise routing,
provisioning and error mapping end to end without an emulator.
"""

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from cosmoslab.cli import create_app
from cosmoslab.client.base import ServiceError
from cosmoslab.client.memory import InMemoryDatabaseClient
from cosmoslab.core.config_manager import CosmosLabConfig

SCHEMA_ERROR = 'ERROR: schema "cosmos_api" does not exist'


@pytest.fixture
def database():
    return InMemoryDatabaseClient()


@pytest.fixture
def client(database):
    """Create test client."""
    return TestClient(create_app(client=database, config=CosmosLabConfig()))


@pytest.fixture
def created_item(client):
    response = client.post("/api/items")
    assert response.status_code == status.HTTP_201_CREATED
    return response.json()


class TestItemsApi:
    """Tests for the CRUD endpoints."""

    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert body["name"] == "CosmosLab"
        assert body["database"] == "SampleDB"
        assert body["container"] == "Items"

    def test_create_item(self, client, database, created_item):
        """Test POST provisions resources and writes a sample item."""
        assert created_item["title"] == "Sample Todo Item"
        assert created_item["isCompleted"] is False
        assert "createdAt" in created_item
        assert database.read_database("SampleDB")["id"] == "SampleDB"

    def test_create_sets_location(self, client):
        response = client.post("/api/items")

        item_id = response.json()["id"]
        assert response.headers["location"] == f"/api/items/{item_id}"

    def test_create_generates_unique_ids(self, client):
        first = client.post("/api/items").json()
        second = client.post("/api/items").json()

        assert first["id"] != second["id"]

    def test_get_item(self, client, created_item):
        response = client.get(f"/api/items/{created_item['id']}")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["id"] == created_item["id"]

    def test_get_missing_item(self, client, created_item):
        response = client.get("/api/items/does-not-exist")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["detail"] == "Item 'does-not-exist' not found"

    def test_list_items(self, client):
        ids = {client.post("/api/items").json()["id"] for _ in range(3)}

        response = client.get("/api/items")

        assert response.status_code == status.HTTP_200_OK
        assert {item["id"] for item in response.json()} == ids

    def test_delete_item(self, client, created_item):
        response = client.delete(f"/api/items/{created_item['id']}")

        assert response.status_code == status.HTTP_204_NO_CONTENT
        assert client.get(f"/api/items/{created_item['id']}").status_code == status.HTTP_404_NOT_FOUND

    def test_delete_missing_item(self, client, created_item):
        response = client.delete("/api/items/does-not-exist")

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_service_error_maps_to_500(self, client, database):
        database.inject_failures("create_item", [ServiceError(SCHEMA_ERROR, status_code=500)])

        response = client.post("/api/items")

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        body = response.json()
        assert body["detail"].startswith("Error creating item:")
        assert body["category"] == "schema_missing_defect"

    def test_list_before_provisioning(self, client):
        """Test listing a container that does not exist yet reports the error."""
        response = client.get("/api/items")

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json()["category"] == "not_found"


class TestHealth:
    """Tests for the health endpoint."""

    def test_healthy(self, client, database):
        response = client.get("/health")

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert body["status"] == "Healthy"
        assert body["database"] == "SampleDB"
        assert "detail" not in body
        assert database.read_container("SampleDB", "Items").partition_key_path == "/id"

    def test_unhealthy_when_unreachable(self, client, database):
        database.set_unavailable()

        response = client.get("/health")

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        body = response.json()
        assert body["status"] == "Unhealthy"
        assert body["detail"].startswith("Unhealthy: ")
        assert body["category"] == "transient"

    def test_recovers(self, client, database):
        database.set_unavailable()
        assert client.get("/health").status_code == status.HTTP_503_SERVICE_UNAVAILABLE

        database.set_unavailable(False)
        assert client.get("/health").status_code == status.HTTP_200_OK
