"""
CosmosLab - Reproduce the cosmos_api schema error

Starts the preview emulator in Docker with a data volume and a persistent
lifetime, then runs the full workload against it. When the emulator answers
with 500 'schema "cosmos_api" does not exist', the run prints the
REPRODUCED line and exits with code 3.

Requirements:
    pip install -e .
    Docker

Usage:
    python repro_schema_error.py
"""

import asyncio
import sys

from cosmoslab.client.sdk import CosmosSdkClient
from cosmoslab.core.config_manager import EmulatorConfig
from cosmoslab.core.driver import OperationDriver
from cosmoslab.core.logging_config import setup_logging
from cosmoslab.core.models import ExitCode, ResourceIdentity
from cosmoslab.hosting.emulator import EmulatorHost


async def main() -> int:
    setup_logging("INFO")

    emulator = EmulatorConfig(
        data_explorer=True,
        data_volume="cosmoslab-repro-data",
        persistent=True,
    )

    async with EmulatorHost(emulator) as host:
        await host.wait_until_ready(max_attempts=60, delay=3.0)
        print(f"Emulator: {host.connection_string()}")

        connection = host.connection_config()
        with CosmosSdkClient(connection) as client:
            driver = OperationDriver(connection, ResourceIdentity(), client)
            loop = asyncio.get_running_loop()
            code = await loop.run_in_executor(None, driver.run)

    if code == ExitCode.SUCCESS:
        print("TEST_OK")
    return int(code)


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
