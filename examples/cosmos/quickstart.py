"""
CosmosLab - Quickstart

Connects to a running Cosmos DB emulator, provisions a database and
container, writes a user document and reads it back by email address.

Requirements:
    pip install -e .
    A Cosmos DB emulator listening on https://localhost:8081/

Usage:
    python quickstart.py
    COSMOSLAB_CONNECTION_STRING="AccountEndpoint=...;AccountKey=...;" python quickstart.py
"""

import os
import sys
import uuid

from cosmoslab.client.base import ContainerRef, ServiceError
from cosmoslab.client.sdk import CosmosSdkClient
from cosmoslab.core.logging_config import setup_logging
from cosmoslab.core.models import EMULATOR_ENDPOINT, EMULATOR_KEY, ConnectionConfig, ResourceIdentity
from cosmoslab.core.prober import ConnectivityProber
from cosmoslab.core.provisioner import ensure


CONNECTION_STRING = os.getenv(
    "COSMOSLAB_CONNECTION_STRING",
    f"AccountEndpoint={EMULATOR_ENDPOINT};AccountKey={EMULATOR_KEY};",
)


def main() -> int:
    setup_logging("INFO")

    config = ConnectionConfig.from_connection_string(CONNECTION_STRING)
    identity = ResourceIdentity(database_name="MyDb", container_name="Users", partition_key_path="/emailAddress")

    with CosmosSdkClient(config) as client:
        print(f"Waiting for {config.endpoint}...")
        outcome = ConnectivityProber(client, endpoint=config.endpoint).probe(max_attempts=10, delay=3.0)
        if not outcome.succeeded:
            print(f"Emulator not reachable: {outcome.last_error.message}")
            print(f"Make sure the Cosmos DB emulator is running on {config.endpoint}")
            return 1

        try:
            result = ensure(identity, client)
            print(f"Database existed: {result.database_existed}, container existed: {result.container_existed}")

            container = ContainerRef(identity.database_name, identity.container_name, identity.partition_key_path)
            email = f"user-{uuid.uuid4().hex[:8]}@example.com"
            user = {"id": str(uuid.uuid4()), "name": "Test User", "emailAddress": email}

            client.create_item(container, user, email)
            print(f"Created user {user['id']}. Request charge: {client.last_request_charge} RUs")

            query = "SELECT * FROM c WHERE c.emailAddress = @email"
            for found in client.query_items(container, query, parameters=[{"name": "@email", "value": email}]):
                print(f"Found user: {found['name']} <{found['emailAddress']}>")

        except ServiceError as e:
            print(f"Cosmos DB error ({e.status_code}): {e.message}")
            return 1

    print("Cosmos DB emulator test completed successfully!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
