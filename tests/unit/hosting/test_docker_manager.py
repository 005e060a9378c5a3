"""
Tests for Docker Manager.
"""

import logging

import pytest
import docker.errors
from unittest.mock import AsyncMock, MagicMock, patch

from cosmoslab.hosting.docker_manager import (
    MANAGED_LABEL,
    NAME_LABEL,
    ContainerState,
    DockerConfig,
    DockerManager,
)


@pytest.fixture
def docker_config():
    """Create a sample Docker configuration."""
    return DockerConfig(
        image="test/emulator:latest",
        ports={"8081/tcp": 8081, "1234/tcp": 1234},
        volumes={"cosmos-data": "/data"},
        environment={"PROTOCOL": "https"},
    )


@pytest.fixture
def mock_docker_client():
    """Create a mock Docker client with no existing containers."""
    client = MagicMock()
    client.ping.return_value = True
    client.containers.get.side_effect = docker.errors.NotFound("No such container")
    return client


@pytest.fixture
def manager(mock_docker_client):
    manager = DockerManager(client=mock_docker_client)
    manager._docker_available = True
    return manager


class TestDockerConfig:
    """Tests for DockerConfig dataclass."""

    def test_docker_config_creation(self):
        config = DockerConfig(image="emulator:latest", ports={"8081/tcp": 8081})

        assert config.image == "emulator:latest"
        assert config.ports == {"8081/tcp": 8081}
        assert config.network_mode == "bridge"

    def test_docker_config_requires_image(self):
        """Test that image is required."""
        with pytest.raises(ValueError, match="Docker image is required"):
            DockerConfig(image="")

    def test_docker_config_defaults(self):
        config = DockerConfig(image="test:latest")

        assert config.ports == {}
        assert config.volumes == {}
        assert config.environment == {}
        assert config.command is None


class TestDockerManager:
    """Tests for DockerManager."""

    @pytest.mark.asyncio
    async def test_initialize_with_injected_client(self, mock_docker_client):
        """Test initialization pings an injected client."""
        manager = DockerManager(client=mock_docker_client)

        result = await manager.initialize()

        assert result is True
        assert manager.is_available() is True
        mock_docker_client.ping.assert_called_once()

    @pytest.mark.asyncio
    async def test_initialize_docker_unavailable(self, mock_docker_client):
        """Test initialization when the daemon does not answer."""
        mock_docker_client.ping.side_effect = Exception("Cannot connect to the Docker daemon")
        manager = DockerManager(client=mock_docker_client)

        result = await manager.initialize()

        assert result is False
        assert manager.is_available() is False

    @pytest.mark.asyncio
    async def test_initialize_from_env(self):
        """Test the client is built from the environment when none is injected."""
        with patch("docker.from_env") as from_env:
            from_env.return_value.ping.return_value = True
            manager = DockerManager()

            assert await manager.initialize() is True

        from_env.assert_called_once()

    @pytest.mark.asyncio
    async def test_start_container_success(self, manager, mock_docker_client, docker_config):
        """Test successfully starting a new container."""
        result = await manager.start_container("cosmos", docker_config, stream_logs=False)

        assert result is True
        assert manager._container_states["cosmos"] == ContainerState.RUNNING

        call_kwargs = mock_docker_client.containers.run.call_args.kwargs
        assert call_kwargs["image"] == "test/emulator:latest"
        assert call_kwargs["name"] == "cosmos"
        assert call_kwargs["ports"] == {"8081/tcp": 8081, "1234/tcp": 1234}
        assert call_kwargs["volumes"] == {"cosmos-data": {"bind": "/data", "mode": "rw"}}
        assert call_kwargs["environment"] == {"PROTOCOL": "https"}
        assert call_kwargs["detach"] is True
        assert call_kwargs["labels"] == {NAME_LABEL: "cosmos", MANAGED_LABEL: "true"}

    @pytest.mark.asyncio
    async def test_start_container_removes_existing(self, manager, mock_docker_client, docker_config):
        """Test that an existing container is replaced when not reusing."""
        existing = MagicMock()
        mock_docker_client.containers.get.side_effect = None
        mock_docker_client.containers.get.return_value = existing

        result = await manager.start_container("cosmos", docker_config, stream_logs=False)

        assert result is True
        existing.remove.assert_called_once_with(force=True)
        mock_docker_client.containers.run.assert_called_once()

    @pytest.mark.asyncio
    async def test_start_container_reuses_running(self, manager, mock_docker_client, docker_config):
        """Test a persistent container that is already running is kept."""
        existing = MagicMock(status="running")
        mock_docker_client.containers.get.side_effect = None
        mock_docker_client.containers.get.return_value = existing

        result = await manager.start_container("cosmos", docker_config, reuse=True, stream_logs=False)

        assert result is True
        existing.reload.assert_called_once()
        existing.start.assert_not_called()
        existing.remove.assert_not_called()
        mock_docker_client.containers.run.assert_not_called()
        assert manager._containers["cosmos"] is existing

    @pytest.mark.asyncio
    async def test_start_container_restarts_stopped(self, manager, mock_docker_client, docker_config):
        """Test a stopped persistent container is started again."""
        existing = MagicMock(status="exited")
        mock_docker_client.containers.get.side_effect = None
        mock_docker_client.containers.get.return_value = existing

        await manager.start_container("cosmos", docker_config, reuse=True, stream_logs=False)

        existing.start.assert_called_once()
        mock_docker_client.containers.run.assert_not_called()

    @pytest.mark.asyncio
    async def test_reuse_without_existing_creates(self, manager, mock_docker_client, docker_config):
        """Test reuse falls back to creating the container."""
        await manager.start_container("cosmos", docker_config, reuse=True, stream_logs=False)

        mock_docker_client.containers.run.assert_called_once()

    @pytest.mark.asyncio
    async def test_start_container_without_docker(self, docker_config):
        """Test starting container when Docker is not available."""
        manager = DockerManager()

        result = await manager.start_container("cosmos", docker_config)

        assert result is False

    @pytest.mark.asyncio
    async def test_start_container_failure(self, manager, mock_docker_client, docker_config):
        """Test container start failure."""
        mock_docker_client.containers.run.side_effect = Exception("port is already allocated")

        result = await manager.start_container("cosmos", docker_config)

        assert result is False
        assert manager._container_states.get("cosmos") == ContainerState.FAILED

    @pytest.mark.asyncio
    async def test_container_logs_forwarded(self, manager, mock_docker_client, docker_config, caplog):
        """Test container output is logged per container."""
        container = MagicMock()
        container.logs.return_value = iter([b"Started Cosmos DB emulator\n", b"\n"])
        mock_docker_client.containers.run.return_value = container

        with caplog.at_level(logging.INFO, logger="cosmoslab.container.cosmos"):
            await manager.start_container("cosmos", docker_config)
            await manager._log_tasks["cosmos"]

        messages = [r.getMessage() for r in caplog.records if r.name == "cosmoslab.container.cosmos"]
        assert messages == ["Started Cosmos DB emulator"]
        container.logs.assert_called_once_with(stream=True, follow=True)

    @pytest.mark.asyncio
    async def test_stop_closes_log_stream(self, manager):
        """Test stopping closes the followed log stream."""
        stream = MagicMock()
        manager._containers["cosmos"] = MagicMock()
        manager._log_streams["cosmos"] = stream

        await manager.stop_container("cosmos")

        stream.close.assert_called_once()
        assert "cosmos" not in manager._log_streams

    @pytest.mark.asyncio
    async def test_stop_container_success(self, manager):
        """Test successfully stopping a container."""
        container = MagicMock()
        manager._containers["cosmos"] = container
        manager._container_states["cosmos"] = ContainerState.RUNNING

        result = await manager.stop_container("cosmos")

        assert result is True
        container.stop.assert_called_once_with(timeout=10)
        assert manager._container_states["cosmos"] == ContainerState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_container_not_found(self, manager):
        """Test stopping a non-existent container."""
        result = await manager.stop_container("nonexistent")

        assert result is False

    @pytest.mark.asyncio
    async def test_remove_container_success(self, manager):
        """Test successfully removing a container."""
        container = MagicMock()
        manager._containers["cosmos"] = container
        manager._container_states["cosmos"] = ContainerState.RUNNING

        result = await manager.remove_container("cosmos")

        assert result is True
        container.stop.assert_called_once_with(timeout=10)
        container.remove.assert_called_once_with(force=True)
        assert "cosmos" not in manager._containers
        assert "cosmos" not in manager._container_states

    @pytest.mark.asyncio
    async def test_release_container_leaves_it_running(self, manager):
        """Test releasing stops tracking without stopping."""
        container = MagicMock()
        manager._containers["cosmos"] = container
        manager._container_states["cosmos"] = ContainerState.RUNNING

        await manager.release_container("cosmos")

        container.stop.assert_not_called()
        container.remove.assert_not_called()
        assert "cosmos" not in manager._containers

    @pytest.mark.asyncio
    async def test_get_container_health_running(self, manager):
        """Test getting health of a running container."""
        container = MagicMock()
        container.attrs = {
            "State": {
                "Status": "running",
                "Running": True,
                "ExitCode": 0,
                "Error": "",
                "StartedAt": "2026-10-19T10:00:00Z",
                "FinishedAt": "0001-01-01T00:00:00Z",
                "Health": {"Status": "healthy"},
            }
        }
        manager._containers["cosmos"] = container
        manager._container_states["cosmos"] = ContainerState.RUNNING

        health = await manager.get_container_health("cosmos")

        assert health["status"] == "running"
        assert health["running"] is True
        assert health["health_status"] == "healthy"
        assert health["state"] == ContainerState.RUNNING

    @pytest.mark.asyncio
    async def test_get_container_health_not_found(self, manager):
        """Test getting health of non-existent container."""
        health = await manager.get_container_health("nonexistent")

        assert health["status"] == "not_found"
        assert health["state"] == ContainerState.NOT_CREATED

    @pytest.mark.asyncio
    async def test_get_container_health_error(self, manager):
        """Test a failing inspect reports an error state."""
        container = MagicMock()
        container.reload.side_effect = Exception("gone")
        manager._containers["cosmos"] = container

        health = await manager.get_container_health("cosmos")

        assert health["status"] == "error"
        assert health["state"] == ContainerState.FAILED

    @pytest.mark.asyncio
    async def test_cleanup_all(self, manager):
        """Test cleaning up all containers."""
        manager._containers["one"] = MagicMock()
        manager._containers["two"] = MagicMock()

        with patch.object(manager, "remove_container", new_callable=AsyncMock) as mock_remove:
            await manager.cleanup_all()

        assert mock_remove.call_count == 2

    @pytest.mark.asyncio
    async def test_cleanup_managed_containers(self, manager, mock_docker_client):
        """Test orphaned managed containers are removed."""
        orphan1 = MagicMock()
        orphan1.name = "cosmoslab-emulator"
        orphan2 = MagicMock()
        orphan2.name = "cosmoslab-other"
        mock_docker_client.containers.list.return_value = [orphan1, orphan2]

        await manager.cleanup_managed_containers()

        orphan1.remove.assert_called_once_with(force=True)
        orphan2.remove.assert_called_once_with(force=True)
        filters = mock_docker_client.containers.list.call_args.kwargs["filters"]
        assert filters == {"label": f"{MANAGED_LABEL}=true"}

    @pytest.mark.asyncio
    async def test_cleanup_managed_containers_by_name(self, manager, mock_docker_client):
        mock_docker_client.containers.list.return_value = []

        await manager.cleanup_managed_containers("cosmoslab-emulator")

        filters = mock_docker_client.containers.list.call_args.kwargs["filters"]
        assert filters == {"label": f"{NAME_LABEL}=cosmoslab-emulator"}

    @pytest.mark.asyncio
    async def test_shutdown(self, manager, mock_docker_client):
        """Test manager shutdown."""
        manager._containers["cosmos"] = MagicMock()

        with patch.object(manager, "cleanup_all", new_callable=AsyncMock) as mock_cleanup:
            await manager.shutdown()

        mock_cleanup.assert_called_once()
        mock_docker_client.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_shutdown_keeps_named_containers(self, manager, mock_docker_client):
        """Test containers listed in keep survive shutdown."""
        kept = MagicMock()
        removed = MagicMock()
        manager._containers["kept"] = kept
        manager._containers["removed"] = removed

        await manager.shutdown(keep=["kept"])

        kept.stop.assert_not_called()
        kept.remove.assert_not_called()
        removed.remove.assert_called_once_with(force=True)
        mock_docker_client.close.assert_called_once()
