"""
Cosmos DB emulator host.

Runs the Linux Cosmos DB emulator in Docker with a fixed gateway port, an
optional Data Explorer and an optional named data volume. A persistent
emulator is reused across runs and left running on teardown.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from cosmoslab.client.base import DatabaseClient
from cosmoslab.core.config_manager import EmulatorConfig
from cosmoslab.core.models import EMULATOR_KEY, ConnectionConfig, ProbeOutcome
from cosmoslab.core.prober import ConnectivityProber
from .docker_manager import DockerConfig, DockerManager

logger = logging.getLogger(__name__)

GATEWAY_CONTAINER_PORT = "8081/tcp"
EXPLORER_CONTAINER_PORT = "1234/tcp"
DATA_PATH = "/data"


class HostingError(Exception):
    """The emulator container could not be started."""


def _default_client_factory(config: ConnectionConfig) -> DatabaseClient:
    from cosmoslab.client.sdk import CosmosSdkClient
    return CosmosSdkClient(config)


class EmulatorHost:
    """
    Starts, waits for, and tears down a Cosmos DB emulator container.

    Example:
        host = EmulatorHost(EmulatorConfig(persistent=True))
        await host.start()
        outcome = await host.wait_until_ready(max_attempts=30, delay=3.0)
        config = host.connection_config()
        ...
        await host.stop()
    """

    def __init__(
        self,
        config: Optional[EmulatorConfig] = None,
        docker: Optional[DockerManager] = None,
        credential: str = EMULATOR_KEY,
        client_factory: Callable[[ConnectionConfig], DatabaseClient] = _default_client_factory,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or EmulatorConfig()
        self.docker = docker or DockerManager()
        self.credential = credential
        self._client_factory = client_factory
        self._sleep = sleep
        self._started = False

    @property
    def endpoint(self) -> str:
        """Gateway endpoint as seen from the host."""
        return f"{self.config.protocol}://localhost:{self.config.gateway_port}/"

    @property
    def data_explorer_url(self) -> Optional[str]:
        if not self.config.data_explorer:
            return None
        return f"http://localhost:{self.config.data_explorer_port}/"

    def docker_config(self) -> DockerConfig:
        """Container settings derived from the emulator configuration."""
        ports: Dict[str, int] = {GATEWAY_CONTAINER_PORT: self.config.gateway_port}
        environment = {
            "PROTOCOL": self.config.protocol,
            "ENABLE_EXPLORER": "true" if self.config.data_explorer else "false",
        }
        if self.config.data_explorer:
            ports[EXPLORER_CONTAINER_PORT] = self.config.data_explorer_port

        volumes = {}
        if self.config.data_volume:
            volumes[self.config.data_volume] = DATA_PATH

        return DockerConfig(
            image=self.config.image,
            ports=ports,
            volumes=volumes,
            environment=environment,
        )

    async def start(self) -> None:
        """
        Start the emulator container, or reuse it when persistent.

        Raises:
            HostingError: If Docker is unavailable or the container fails to start
        """
        if not await self.docker.initialize():
            raise HostingError("Docker is not available; cannot start the Cosmos DB emulator")

        started = await self.docker.start_container(
            self.config.container_name,
            self.docker_config(),
            reuse=self.config.persistent,
        )
        if not started:
            raise HostingError(f"Failed to start emulator container {self.config.container_name}")

        self._started = True
        logger.info(f"Cosmos DB emulator container {self.config.container_name} serving {self.endpoint}")
        if self.data_explorer_url:
            logger.info(f"Data Explorer available at {self.data_explorer_url}")

    async def wait_until_ready(self, max_attempts: int = 30, delay: float = 3.0) -> ProbeOutcome:
        """
        Probe the gateway until it answers.

        The blocking prober runs in the default executor so container log
        streaming keeps flowing while it waits.

        Returns:
            ProbeOutcome from the prober
        """
        client = self._client_factory(self.connection_config())
        try:
            prober = ConnectivityProber(client, sleep=self._sleep, endpoint=self.endpoint)
            loop = asyncio.get_running_loop()
            outcome = await loop.run_in_executor(None, prober.probe, max_attempts, delay)
        finally:
            client.close()

        if outcome.succeeded:
            logger.info(f"Emulator ready after {outcome.attempts_used} attempt(s)")
        else:
            logger.error(f"Emulator not ready after {outcome.attempts_used} attempt(s)")
        return outcome

    def connection_config(self, **overrides: Any) -> ConnectionConfig:
        """Connection settings for clients of this emulator."""
        values: Dict[str, Any] = {
            "endpoint": self.endpoint,
            "credential": self.credential,
            "allow_insecure_tls": True,
        }
        values.update(overrides)
        return ConnectionConfig(**values)

    def connection_string(self) -> str:
        """Emulator connection string in ``AccountEndpoint=...;AccountKey=...;`` form."""
        return f"AccountEndpoint={self.endpoint};AccountKey={self.credential};"

    async def stop(self) -> None:
        """Tear down the emulator; a persistent container is left running."""
        if not self._started:
            return

        keep = [self.config.container_name] if self.config.persistent else None
        await self.docker.shutdown(keep=keep)
        self._started = False

    async def status(self) -> Dict[str, Any]:
        """Container health plus the endpoints clients should use."""
        health = await self.docker.get_container_health(self.config.container_name)
        return {
            **health,
            "container": self.config.container_name,
            "endpoint": self.endpoint,
            "data_explorer": self.data_explorer_url,
            "persistent": self.config.persistent,
        }

    async def __aenter__(self) -> "EmulatorHost":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
