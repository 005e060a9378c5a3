"""
Docker integration for the CosmosLab hosting harness.

Manages the emulator container: lifecycle, reuse of a persistent container,
health checks, and streaming of container logs into `logging`.
"""

import asyncio
import logging
from typing import Dict, Optional, List, Any
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)

MANAGED_LABEL = "cosmoslab.managed"
NAME_LABEL = "cosmoslab.name"


class ContainerState(str, Enum):
    """Docker container states."""
    NOT_CREATED = "not_created"
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class DockerConfig:
    """Docker container configuration."""
    image: str
    ports: Dict[str, int] = field(default_factory=dict)  # container_port -> host_port
    volumes: Dict[str, str] = field(default_factory=dict)  # volume name or host path -> container path
    environment: Dict[str, str] = field(default_factory=dict)
    command: Optional[List[str]] = None
    network_mode: str = "bridge"

    def __post_init__(self):
        """Validate Docker configuration."""
        if not self.image:
            raise ValueError("Docker image is required")


class DockerManager:
    """
    Manages Docker containers started by CosmosLab.

    Responsibilities:
    - Detect Docker availability
    - Start, reuse, stop and remove containers
    - Monitor container health
    - Integrate container logs into CosmosLab logging
    - Clean up containers on shutdown
    """

    def __init__(self, client: Optional[Any] = None):
        """
        Initialize Docker manager.

        Args:
            client: Pre-built ``docker.DockerClient`` (tests inject a mock)
        """
        self._docker_client: Optional[Any] = client
        self._docker_available = False
        self._containers: Dict[str, Any] = {}
        self._container_states: Dict[str, ContainerState] = {}
        self._log_tasks: Dict[str, asyncio.Task] = {}
        self._log_streams: Dict[str, Any] = {}

    async def initialize(self) -> bool:
        """
        Initialize Docker client and detect Docker availability.

        Returns:
            bool: True if Docker is available, False otherwise
        """
        try:
            if self._docker_client is None:
                import docker
                self._docker_client = docker.from_env()
            self._docker_client.ping()
            self._docker_available = True
            logger.info("Docker is available and connected")
            return True
        except ImportError:
            logger.warning("Docker SDK not installed. Install with: pip install docker")
            self._docker_available = False
            return False
        except Exception as e:
            logger.warning(f"Docker is not available: {e}")
            self._docker_available = False
            return False

    def is_available(self) -> bool:
        """Check if Docker is available."""
        return self._docker_available

    async def start_container(
        self,
        container_name: str,
        config: DockerConfig,
        reuse: bool = False,
        stream_logs: bool = True,
    ) -> bool:
        """
        Start a Docker container.

        Args:
            container_name: Docker container name
            config: Docker configuration
            reuse: Keep an existing container with the same name instead of
                replacing it (started again if it was stopped)
            stream_logs: Forward container output to the logger

        Returns:
            bool: True if the container is running
        """
        if not self._docker_available:
            logger.error("Docker is not available")
            return False

        try:
            existing = self._get_existing_container(container_name)
            if existing is not None and reuse:
                existing.reload()
                if existing.status != "running":
                    logger.info(f"Starting existing container: {container_name}")
                    existing.start()
                else:
                    logger.info(f"Reusing running container: {container_name}")
                container = existing
            else:
                if existing is not None:
                    logger.info(f"Removing existing container: {container_name}")
                    existing.remove(force=True)

                volumes = {
                    source: {"bind": target, "mode": "rw"}
                    for source, target in config.volumes.items()
                }

                logger.info(f"Creating container {container_name} from image {config.image}")
                container = self._docker_client.containers.run(
                    image=config.image,
                    name=container_name,
                    ports=dict(config.ports),
                    volumes=volumes,
                    environment=config.environment,
                    command=config.command,
                    network_mode=config.network_mode,
                    detach=True,
                    remove=False,
                    labels={
                        NAME_LABEL: container_name,
                        MANAGED_LABEL: "true",
                    },
                )

            self._containers[container_name] = container
            self._container_states[container_name] = ContainerState.RUNNING

            if stream_logs:
                await self._start_log_streaming(container_name, container)

            logger.info(f"Container {container_name} started successfully")
            return True

        except Exception as e:
            logger.error(f"Failed to start container {container_name}: {e}")
            self._container_states[container_name] = ContainerState.FAILED
            return False

    async def stop_container(self, container_name: str) -> bool:
        """
        Stop a Docker container.

        Returns:
            bool: True if container stopped successfully
        """
        try:
            await self._stop_log_streaming(container_name)

            container = self._containers.get(container_name)
            if container:
                logger.info(f"Stopping container: {container_name}")
                container.stop(timeout=10)
                self._container_states[container_name] = ContainerState.STOPPED
                logger.info(f"Container {container_name} stopped")
                return True
            else:
                logger.warning(f"Container {container_name} not found")
                return False

        except Exception as e:
            logger.error(f"Failed to stop container {container_name}: {e}")
            return False

    async def remove_container(self, container_name: str) -> bool:
        """
        Stop and remove a Docker container.

        Returns:
            bool: True if container removed successfully
        """
        try:
            await self.stop_container(container_name)

            container = self._containers.get(container_name)
            if container:
                logger.info(f"Removing container: {container_name}")
                container.remove(force=True)
                del self._containers[container_name]
                del self._container_states[container_name]
                logger.info(f"Container {container_name} removed")
                return True
            else:
                logger.warning(f"Container {container_name} not found")
                return False

        except Exception as e:
            logger.error(f"Failed to remove container {container_name}: {e}")
            return False

    async def release_container(self, container_name: str) -> None:
        """Stop tracking a container without stopping it."""
        await self._stop_log_streaming(container_name)
        self._containers.pop(container_name, None)
        self._container_states.pop(container_name, None)
        logger.info(f"Leaving container {container_name} running")

    async def get_container_health(self, container_name: str) -> Dict[str, Any]:
        """
        Get container health status.

        Returns:
            dict: Health status information
        """
        try:
            container = self._containers.get(container_name)
            if not container:
                return {
                    'status': 'not_found',
                    'state': ContainerState.NOT_CREATED
                }

            container.reload()

            state = container.attrs.get('State', {})
            health = state.get('Health', {})

            return {
                'status': state.get('Status', 'unknown'),
                'running': state.get('Running', False),
                'health_status': health.get('Status', 'none'),
                'exit_code': state.get('ExitCode'),
                'error': state.get('Error', ''),
                'started_at': state.get('StartedAt'),
                'finished_at': state.get('FinishedAt'),
                'state': self._container_states.get(container_name, ContainerState.NOT_CREATED)
            }

        except Exception as e:
            logger.error(f"Failed to get health for container {container_name}: {e}")
            return {
                'status': 'error',
                'error': str(e),
                'state': ContainerState.FAILED
            }

    async def cleanup_all(self) -> None:
        """Stop and remove every container this manager started."""
        logger.info("Cleaning up all CosmosLab containers")

        for stream in self._log_streams.values():
            if hasattr(stream, "close"):
                stream.close()
        self._log_streams.clear()

        for task in self._log_tasks.values():
            task.cancel()

        if self._log_tasks:
            await asyncio.gather(*self._log_tasks.values(), return_exceptions=True)

        self._log_tasks.clear()

        for container_name in list(self._containers.keys()):
            await self.remove_container(container_name)

        logger.info("All containers cleaned up")

    async def cleanup_managed_containers(self, container_name: Optional[str] = None) -> None:
        """
        Remove containers labelled as CosmosLab-managed (for crash recovery).

        Args:
            container_name: Only remove the container with this name
        """
        if not self._docker_available:
            return

        try:
            filters = {'label': f'{MANAGED_LABEL}=true'}
            if container_name:
                filters['label'] = f'{NAME_LABEL}={container_name}'

            containers = self._docker_client.containers.list(all=True, filters=filters)

            for container in containers:
                try:
                    logger.info(f"Cleaning up orphaned container: {container.name}")
                    container.remove(force=True)
                except Exception as e:
                    logger.error(f"Failed to remove container {container.name}: {e}")

        except Exception as e:
            logger.error(f"Failed to cleanup managed containers: {e}")

    def _get_existing_container(self, container_name: str) -> Optional[Any]:
        """Get existing container by name."""
        import docker.errors

        try:
            return self._docker_client.containers.get(container_name)
        except docker.errors.NotFound:
            return None

    async def _start_log_streaming(self, container_name: str, container: Any) -> None:
        """Start streaming container logs to CosmosLab logging."""
        task = asyncio.create_task(self._stream_logs(container_name, container))
        self._log_tasks[container_name] = task

    async def _stop_log_streaming(self, container_name: str) -> None:
        """Stop streaming container logs."""
        # The reader thread blocks on the socket until the stream is closed
        stream = self._log_streams.pop(container_name, None)
        if stream is not None and hasattr(stream, "close"):
            stream.close()

        task = self._log_tasks.get(container_name)
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            del self._log_tasks[container_name]

    async def _stream_logs(self, container_name: str, container: Any) -> None:
        """Stream container logs to a per-container logger."""
        container_logger = logging.getLogger(f"cosmoslab.container.{container_name}")

        try:
            # Stream logs in a separate thread to avoid blocking
            loop = asyncio.get_running_loop()

            def read_logs():
                try:
                    stream = container.logs(stream=True, follow=True)
                    self._log_streams[container_name] = stream
                    for line in stream:
                        decoded = line.decode('utf-8', errors='replace').strip()
                        if decoded:
                            container_logger.info(decoded)
                except Exception as e:
                    container_logger.error(f"Log streaming error: {e}")

            await loop.run_in_executor(None, read_logs)

        except asyncio.CancelledError:
            container_logger.info(f"Log streaming stopped for {container_name}")
        except Exception as e:
            container_logger.error(f"Failed to stream logs for {container_name}: {e}")

    async def shutdown(self, keep: Optional[List[str]] = None) -> None:
        """
        Shutdown Docker manager and cleanup resources.

        Args:
            keep: Names of containers to leave running
        """
        for container_name in keep or []:
            if container_name in self._containers:
                await self.release_container(container_name)

        await self.cleanup_all()

        if self._docker_client:
            try:
                self._docker_client.close()
            except Exception as e:
                logger.error(f"Error closing Docker client: {e}")

        logger.info("Docker manager shutdown complete")
