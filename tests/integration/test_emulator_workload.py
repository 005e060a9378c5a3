"""
Integration tests against a running Cosmos DB emulator.

Set COSMOSLAB_EMULATOR_ENDPOINT (for example https://localhost:8081/) to run
them; otherwise they are skipped.
"""

import io
import os
import uuid

import pytest

from cosmoslab.client.base import ServiceError
from cosmoslab.core.diagnostics import DiagnosticReporter
from cosmoslab.core.driver import OperationDriver
from cosmoslab.core.models import ConnectionConfig, ExitCode, ResourceIdentity
from cosmoslab.core.prober import ConnectivityProber
from cosmoslab.core.provisioner import ResourceProvisioner

ENDPOINT = os.getenv("COSMOSLAB_EMULATOR_ENDPOINT")

pytestmark = [
    pytest.mark.emulator,
    pytest.mark.skipif(not ENDPOINT, reason="COSMOSLAB_EMULATOR_ENDPOINT not set"),
]


@pytest.fixture
def connection():
    return ConnectionConfig(endpoint=ENDPOINT, allow_insecure_tls=True)


@pytest.fixture
def sdk_client(connection):
    from cosmoslab.client.sdk import CosmosSdkClient

    with CosmosSdkClient(connection) as client:
        yield client


@pytest.fixture
def identity():
    return ResourceIdentity(database_name=f"cosmoslab-it-{uuid.uuid4().hex[:8]}")


@pytest.fixture
def cleanup(sdk_client, identity):
    yield
    try:
        sdk_client.delete_database(identity.database_name)
    except ServiceError:
        pass


def test_probe(sdk_client):
    outcome = ConnectivityProber(sdk_client, sleep=lambda _: None).probe(max_attempts=30, delay=2.0)

    assert outcome.succeeded is True


def test_provision_is_idempotent(sdk_client, identity, cleanup):
    first = ResourceProvisioner(sdk_client).ensure(identity)
    second = ResourceProvisioner(sdk_client).ensure(identity)

    assert first.database_existed is False
    assert second.database_existed is True
    assert second.container_existed is True


def test_full_workload(sdk_client, connection, identity, cleanup):
    """Test the workload succeeds, or hits the known schema defect."""
    output = io.StringIO()
    driver = OperationDriver(
        connection,
        identity,
        sdk_client,
        max_attempts=30,
        probe_delay=2.0,
        reporter=DiagnosticReporter(output),
    )

    code = driver.run()

    assert code in (ExitCode.SUCCESS, ExitCode.SCHEMA_MISSING_DEFECT), output.getvalue()
