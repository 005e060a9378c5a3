"""
Tests for the Cosmos DB emulator host.
"""

import pytest
from unittest.mock import AsyncMock

from cosmoslab.client.memory import InMemoryDatabaseClient
from cosmoslab.core.config_manager import EmulatorConfig
from cosmoslab.core.models import EMULATOR_KEY
from cosmoslab.hosting.docker_manager import DockerManager
from cosmoslab.hosting.emulator import EmulatorHost, HostingError


@pytest.fixture
def docker():
    manager = AsyncMock(spec=DockerManager)
    manager.initialize.return_value = True
    manager.start_container.return_value = True
    manager.get_container_health.return_value = {"status": "running", "running": True}
    return manager


@pytest.fixture
def client():
    return InMemoryDatabaseClient()


@pytest.fixture
def make_host(docker, client):
    def factory(**settings):
        configs = []

        def client_factory(config):
            configs.append(config)
            return client

        host = EmulatorHost(
            EmulatorConfig(**settings),
            docker=docker,
            client_factory=client_factory,
            sleep=lambda _: None,
        )
        host.client_configs = configs
        return host
    return factory


class TestContainerSettings:
    """Tests for the derived container settings."""

    def test_default_ports_and_environment(self, make_host):
        config = make_host().docker_config()

        assert config.image == "mcr.microsoft.com/cosmosdb/linux/azure-cosmos-emulator:vnext-preview"
        assert config.ports == {"8081/tcp": 8081, "1234/tcp": 1234}
        assert config.environment == {"PROTOCOL": "https", "ENABLE_EXPLORER": "true"}
        assert config.volumes == {}

    def test_explorer_disabled(self, make_host):
        host = make_host(data_explorer=False)
        config = host.docker_config()

        assert config.ports == {"8081/tcp": 8081}
        assert config.environment["ENABLE_EXPLORER"] == "false"
        assert host.data_explorer_url is None

    def test_data_volume_mounted(self, make_host):
        config = make_host(data_volume="cosmos-data").docker_config()

        assert config.volumes == {"cosmos-data": "/data"}

    def test_endpoint_follows_protocol_and_port(self, make_host):
        host = make_host(protocol="http", gateway_port=9081)

        assert host.endpoint == "http://localhost:9081/"
        assert host.docker_config().ports["8081/tcp"] == 9081

    def test_connection_string(self, make_host):
        assert make_host().connection_string() == (
            f"AccountEndpoint=https://localhost:8081/;AccountKey={EMULATOR_KEY};"
        )

    def test_connection_config(self, make_host):
        config = make_host().connection_config(timeout=5)

        assert config.endpoint == "https://localhost:8081/"
        assert config.credential.get_secret_value() == EMULATOR_KEY
        assert config.allow_insecure_tls is True
        assert config.timeout == 5


class TestLifecycle:
    """Tests for starting, waiting for and stopping the emulator."""

    @pytest.mark.asyncio
    async def test_start(self, make_host, docker):
        host = make_host()

        await host.start()

        name, config = docker.start_container.call_args.args
        assert name == "cosmoslab-emulator"
        assert config.ports["8081/tcp"] == 8081
        assert docker.start_container.call_args.kwargs["reuse"] is False

    @pytest.mark.asyncio
    async def test_persistent_start_reuses_container(self, make_host, docker):
        await make_host(persistent=True).start()

        assert docker.start_container.call_args.kwargs["reuse"] is True

    @pytest.mark.asyncio
    async def test_start_without_docker(self, make_host, docker):
        docker.initialize.return_value = False

        with pytest.raises(HostingError, match="Docker is not available"):
            await make_host().start()

        docker.start_container.assert_not_called()

    @pytest.mark.asyncio
    async def test_start_failure(self, make_host, docker):
        docker.start_container.return_value = False

        with pytest.raises(HostingError, match="cosmoslab-emulator"):
            await make_host().start()

    @pytest.mark.asyncio
    async def test_wait_until_ready(self, make_host, client):
        host = make_host()
        client.inject_failures("read_account_metadata", [
            ConnectionRefusedError(111, "Connection refused"),
        ])

        outcome = await host.wait_until_ready(max_attempts=5, delay=0)

        assert outcome.succeeded is True
        assert host.client_configs[0].endpoint == "https://localhost:8081/"

    @pytest.mark.asyncio
    async def test_wait_until_ready_gives_up(self, make_host, client):
        client.set_unavailable()

        outcome = await make_host().wait_until_ready(max_attempts=3, delay=0)

        assert outcome.succeeded is False
        assert outcome.attempts_used == 3

    @pytest.mark.asyncio
    async def test_stop_removes_ephemeral_container(self, make_host, docker):
        host = make_host()
        await host.start()

        await host.stop()

        docker.shutdown.assert_awaited_once_with(keep=None)

    @pytest.mark.asyncio
    async def test_stop_keeps_persistent_container(self, make_host, docker):
        host = make_host(persistent=True)
        await host.start()

        await host.stop()

        docker.shutdown.assert_awaited_once_with(keep=["cosmoslab-emulator"])

    @pytest.mark.asyncio
    async def test_stop_before_start_is_noop(self, make_host, docker):
        await make_host().stop()

        docker.shutdown.assert_not_called()

    @pytest.mark.asyncio
    async def test_context_manager(self, make_host, docker):
        async with make_host() as host:
            assert host.endpoint == "https://localhost:8081/"

        docker.start_container.assert_awaited_once()
        docker.shutdown.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_status(self, make_host):
        status = await make_host(persistent=True).status()

        assert status["running"] is True
        assert status["container"] == "cosmoslab-emulator"
        assert status["endpoint"] == "https://localhost:8081/"
        assert status["data_explorer"] == "http://localhost:1234/"
        assert status["persistent"] is True
