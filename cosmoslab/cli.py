"""
CosmosLab Command-Line Interface

Probe, provision and exercise a Cosmos DB endpoint, host the emulator in
Docker, and serve the items REST façade.
"""

import sys
import asyncio
import logging
import dataclasses
import functools
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

import click
import uvicorn
import yaml
from fastapi import FastAPI
from pydantic import ValidationError

from cosmoslab import __version__
from cosmoslab.api.routes import router as items_router
from cosmoslab.client.base import DatabaseClient, ServiceError
from cosmoslab.client.memory import InMemoryDatabaseClient
from cosmoslab.core.config_manager import ConfigManager, CosmosLabConfig
from cosmoslab.core.diagnostics import DiagnosticReporter, classify
from cosmoslab.core.driver import OperationDriver
from cosmoslab.core.logging_config import setup_logging
from cosmoslab.core.models import (
    ConnectionConfig,
    DiagnosticContext,
    DriverState,
    ErrorCategory,
    ErrorRecord,
    ExitCode,
)
from cosmoslab.core.prober import ConnectivityProber
from cosmoslab.core.provisioner import ResourceProvisioner

logger = logging.getLogger("cosmoslab.cli")

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def connection_options(f):
    """Options shared by every command that talks to Cosmos DB."""
    options = [
        click.option(
            "--config",
            "-c",
            "config_file",
            type=click.Path(exists=True, dir_okay=False, path_type=Path),
            help="Path to configuration file (YAML or JSON)",
        ),
        click.option("--endpoint", help="Cosmos DB endpoint, e.g. https://localhost:8081/"),
        click.option("--key", help="Account key"),
        click.option("--connection-string", help="AccountEndpoint=...;AccountKey=...; connection string"),
        click.option("--database", help="Database name"),
        click.option("--container", help="Container name"),
        click.option("--partition-key-path", help="Partition key path, e.g. /emailAddress"),
        click.option("--probe-attempts", type=int, help="Connectivity probe attempt budget"),
        click.option("--probe-delay", type=float, help="Seconds between probe attempts"),
        click.option(
            "--insecure/--secure",
            "insecure",
            default=None,
            help="Skip TLS certificate validation (emulator certificates are self-signed)",
        ),
        click.option(
            "--log-level",
            type=click.Choice(LOG_LEVELS, case_sensitive=False),
            help="Logging level",
        ),
        click.option(
            "--log-format",
            type=click.Choice(["text", "json"], case_sensitive=False),
            help="Log output format",
        ),
    ]
    for option in reversed(options):
        f = option(f)
    return f


backend_option = click.option(
    "--backend",
    type=click.Choice(["sdk", "memory"], case_sensitive=False),
    default="sdk",
    show_default=True,
    help="Client backend; 'memory' runs against an in-process emulator",
)


def _overrides(**options: Any) -> Dict[str, Any]:
    """Translate CLI options into a nested configuration dictionary."""
    overrides: Dict[str, Any] = {}

    def put(section: str, key: str, value: Any) -> None:
        if value is not None:
            overrides.setdefault(section, {})[key] = value

    put("connection", "connection_string", options.get("connection_string"))
    put("connection", "endpoint", options.get("endpoint"))
    put("connection", "credential", options.get("key"))
    put("connection", "allow_insecure_tls", options.get("insecure"))
    put("resource", "database_name", options.get("database"))
    put("resource", "container_name", options.get("container"))
    put("resource", "partition_key_path", options.get("partition_key_path"))
    put("probe", "max_attempts", options.get("probe_attempts"))
    put("probe", "delay", options.get("probe_delay"))
    put("workload", "batch", options.get("batch"))
    put("logging", "level", options["log_level"].upper() if options.get("log_level") else None)
    put("logging", "format", options["log_format"].lower() if options.get("log_format") else None)
    put("emulator", "persistent", options.get("persistent"))
    return overrides


def _load(config_file: Optional[Path], **options: Any) -> CosmosLabConfig:
    """Load configuration and configure logging, exiting on invalid input."""
    try:
        config = ConfigManager().load(
            config_file=str(config_file) if config_file else None,
            cli_overrides=_overrides(**options),
        )
    except (ValidationError, ValueError, FileNotFoundError) as e:
        click.echo(f"[ERROR] Invalid configuration: {e}", err=True)
        sys.exit(int(ExitCode.FAILURE))

    setup_logging(
        level=config.logging.level,
        format_type=config.logging.format,
        log_file=config.logging.file,
        rotation_size=config.logging.rotation_size,
        rotation_count=config.logging.rotation_count,
        module_levels=config.logging.module_levels,
    )
    return config


def _make_client(config: CosmosLabConfig, backend: str) -> DatabaseClient:
    if backend.lower() == "memory":
        logger.info("Using in-memory Cosmos DB backend")
        return InMemoryDatabaseClient()

    from cosmoslab.client.sdk import CosmosSdkClient
    return CosmosSdkClient(config.connection)


def _context(config: CosmosLabConfig, endpoint: str, state: DriverState) -> DiagnosticContext:
    return DiagnosticContext(
        endpoint=endpoint,
        database_id=config.resource.database_name,
        container_id=config.resource.container_name,
        state=state,
    )


def _report_unreachable(config: CosmosLabConfig, endpoint: str, last: Optional[ErrorRecord]) -> ExitCode:
    if last is None:
        record = ErrorRecord(ErrorCategory.TRANSIENT, "Endpoint did not become reachable")
    else:
        record = dataclasses.replace(last, category=ErrorCategory.TRANSIENT)
    return DiagnosticReporter().report(record, _context(config, endpoint, DriverState.PROBING))


def _run_driver(
    config: CosmosLabConfig,
    client: DatabaseClient,
    connection: Optional[ConnectionConfig] = None,
) -> ExitCode:
    driver = OperationDriver(
        connection or config.connection,
        config.resource,
        client,
        max_attempts=config.probe.max_attempts,
        probe_delay=config.probe.delay,
        run_batch=config.workload.batch,
        batch_size=config.workload.batch_size,
    )
    return driver.run()


@click.group()
@click.version_option(version=__version__, prog_name="cosmoslab")
@click.pass_context
def cli(ctx):
    """
    CosmosLab - Cosmos DB emulator connectivity and provisioning harness

    Waits for a Cosmos DB endpoint, provisions a database and container, runs
    a representative workload and reports failures with CI-friendly exit codes.
    """
    ctx.ensure_object(dict)


@cli.command()
@connection_options
@backend_option
@click.option("--batch/--no-batch", "batch", default=None, help="Run the transactional batch step")
def run(config_file: Optional[Path], backend: str, **options: Any):
    """
    Probe, provision, insert, query and batch against Cosmos DB.

    Exits 0 on success, 3 when the emulator's cosmos_api schema defect is hit,
    and 1 on any other failure.

    Examples:
        cosmoslab run
        cosmoslab run --endpoint https://localhost:8081/ --probe-attempts 20
        cosmoslab run --backend memory --no-batch
    """
    config = _load(config_file, **options)
    with _make_client(config, backend) as client:
        code = _run_driver(config, client)

    if code == ExitCode.SUCCESS:
        click.echo("Cosmos DB run completed successfully!")
    sys.exit(int(code))


@cli.command()
@connection_options
@backend_option
def probe(config_file: Optional[Path], backend: str, **options: Any):
    """
    Wait until the Cosmos DB endpoint answers.

    Exits 0 once reachable, 1 if the attempt budget runs out.
    """
    config = _load(config_file, **options)
    endpoint = config.connection.endpoint

    with _make_client(config, backend) as client:
        outcome = ConnectivityProber(client, endpoint=endpoint).probe(
            config.probe.max_attempts, config.probe.delay
        )

    if not outcome.succeeded:
        sys.exit(int(_report_unreachable(config, endpoint, outcome.last_error)))

    click.echo(f"[OK] {endpoint} reachable after {outcome.attempts_used} attempt(s)")
    sys.exit(int(ExitCode.SUCCESS))


@cli.command()
@connection_options
@backend_option
def provision(config_file: Optional[Path], backend: str, **options: Any):
    """
    Ensure the configured database and container exist.

    Reports whether each resource already existed or was created.
    """
    config = _load(config_file, **options)
    endpoint = config.connection.endpoint

    with _make_client(config, backend) as client:
        outcome = ConnectivityProber(client, endpoint=endpoint).probe(
            config.probe.max_attempts, config.probe.delay
        )
        if not outcome.succeeded:
            sys.exit(int(_report_unreachable(config, endpoint, outcome.last_error)))

        try:
            result = ResourceProvisioner(client).ensure(config.resource)
        except (ServiceError, OSError) as e:
            code = DiagnosticReporter().report(
                classify(e), _context(config, endpoint, DriverState.PROVISIONING)
            )
            sys.exit(int(code))

    resource = config.resource
    click.echo(f"Database  {resource.database_name}: {'existed' if result.database_existed else 'created'}")
    click.echo(
        f"Container {resource.database_name}/{resource.container_name} "
        f"({resource.partition_key_path}): {'existed' if result.container_existed else 'created'}"
    )
    sys.exit(int(ExitCode.SUCCESS))


def emulator_options(f):
    """Options shared by commands that start the emulator container."""
    options = [
        click.option(
            "--persistent/--ephemeral",
            "persistent",
            default=None,
            help="Leave the emulator running on exit and reuse it next time",
        ),
        click.option(
            "--wait-attempts",
            type=int,
            default=60,
            show_default=True,
            help="Readiness probe attempts after the container starts",
        ),
    ]
    for option in reversed(options):
        f = option(f)
    return f


async def _host(config: CosmosLabConfig, wait_attempts: int, provision_resources: bool) -> int:
    from cosmoslab.client.sdk import CosmosSdkClient
    from cosmoslab.hosting.emulator import EmulatorHost, HostingError

    host = EmulatorHost(config.emulator)
    try:
        await host.start()
    except HostingError as e:
        click.echo(f"[ERROR] {e}", err=True)
        return int(ExitCode.FAILURE)

    try:
        outcome = await host.wait_until_ready(wait_attempts, config.probe.delay)
        if not outcome.succeeded:
            return int(_report_unreachable(config, host.endpoint, outcome.last_error))

        if provision_resources:
            loop = asyncio.get_running_loop()
            with CosmosSdkClient(host.connection_config()) as client:
                try:
                    await loop.run_in_executor(
                        None, ResourceProvisioner(client).ensure, config.resource
                    )
                except ServiceError as e:
                    return int(DiagnosticReporter().report(
                        classify(e), _context(config, host.endpoint, DriverState.PROVISIONING)
                    ))

        click.echo(f"Cosmos DB emulator ready at {host.endpoint}")
        click.echo(f"Connection string: {host.connection_string()}")
        if host.data_explorer_url:
            click.echo(f"Data Explorer: {host.data_explorer_url}")
        click.echo("Press Ctrl+C to stop")

        await asyncio.Event().wait()
        return int(ExitCode.SUCCESS)
    finally:
        await host.stop()


@cli.command()
@connection_options
@emulator_options
@click.option(
    "--provision/--no-provision",
    "provision_resources",
    default=True,
    show_default=True,
    help="Create the configured database and container once the emulator is ready",
)
def host(config_file: Optional[Path], wait_attempts: int, provision_resources: bool, **options: Any):
    """
    Run the Cosmos DB emulator in Docker until interrupted.

    Examples:
        cosmoslab host
        cosmoslab host --persistent --no-provision
    """
    config = _load(config_file, **options)
    try:
        code = asyncio.run(_host(config, wait_attempts, provision_resources))
    except KeyboardInterrupt:
        click.echo("\nShutting down Cosmos DB emulator...")
        code = int(ExitCode.SUCCESS)
    sys.exit(code)


async def _repro(config: CosmosLabConfig, wait_attempts: int) -> int:
    from cosmoslab.client.sdk import CosmosSdkClient
    from cosmoslab.hosting.emulator import EmulatorHost, HostingError

    host = EmulatorHost(config.emulator)
    try:
        await host.start()
    except HostingError as e:
        click.echo(f"[ERROR] {e}", err=True)
        return int(ExitCode.FAILURE)

    try:
        # The driver probes again with its own budget and reports if still unreachable
        await host.wait_until_ready(wait_attempts, config.probe.delay)

        connection = host.connection_config()
        loop = asyncio.get_running_loop()
        with CosmosSdkClient(connection) as client:
            code = await loop.run_in_executor(
                None, functools.partial(_run_driver, config, client, connection)
            )
        return int(code)
    finally:
        await host.stop()


@cli.command()
@connection_options
@emulator_options
def repro(config_file: Optional[Path], wait_attempts: int, **options: Any):
    """
    Reproduce the emulator's cosmos_api schema defect.

    Starts the emulator (persistent unless --ephemeral), runs the full
    workload against it and exits with the workload's exit code: 3 when the
    defect reproduced. Prints TEST_OK when the run succeeds.
    """
    if options.get("persistent") is None:
        options["persistent"] = True
    config = _load(config_file, **options)

    code = asyncio.run(_repro(config, wait_attempts))
    if code == ExitCode.SUCCESS:
        click.echo("TEST_OK")
    sys.exit(code)


@cli.command()
@click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to configuration file",
)
@click.option("--host", help="Host to bind to (default from configuration: 127.0.0.1)")
@click.option("--port", type=int, help="Port to bind to (default from configuration: 5080)")
@click.option(
    "--backend",
    type=click.Choice(["sdk", "memory"], case_sensitive=False),
    default="sdk",
    show_default=True,
    help="Client backend",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    help="Logging level",
)
def serve(config_file: Optional[Path], host: Optional[str], port: Optional[int], backend: str, log_level: Optional[str]):
    """
    Serve the items REST API.

    Examples:
        cosmoslab serve
        cosmoslab serve --backend memory --port 8080
    """
    config = _load(config_file, log_level=log_level)
    bind_host = host or config.api.host
    bind_port = port or config.api.port

    click.echo(f"Starting CosmosLab API v{__version__}")
    click.echo(f"Host: {bind_host}:{bind_port}")
    click.echo(f"Cosmos DB: {config.connection.endpoint} ({backend})")
    click.echo()

    app = create_app(client=_make_client(config, backend), config=config)
    try:
        uvicorn.run(
            app,
            host=bind_host,
            port=bind_port,
            log_level=str(config.logging.level).lower(),
            access_log=True,
        )
    except Exception as e:
        click.echo(f"[ERROR] Error starting CosmosLab API: {e}", err=True)
        sys.exit(int(ExitCode.FAILURE))


@cli.command()
@click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to configuration file",
)
def config(config_file: Optional[Path]):
    """
    Show the effective configuration.

    Merges defaults, the configuration file and COSMOSLAB_* environment
    variables. Secrets are masked.
    """
    manager = ConfigManager()
    try:
        manager.load(config_file=str(config_file) if config_file else None)
    except (ValidationError, ValueError, FileNotFoundError) as e:
        click.echo(f"[ERROR] Invalid configuration: {e}", err=True)
        sys.exit(int(ExitCode.FAILURE))

    click.echo(yaml.safe_dump(manager.dump(), sort_keys=False).rstrip())


@cli.command()
def version():
    """Show CosmosLab version."""
    click.echo(f"CosmosLab version {__version__}")


def create_app(
    client: Optional[DatabaseClient] = None,
    config: Optional[CosmosLabConfig] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        client: Database client (defaults to the SDK client for ``config``)
        config: Configuration (defaults to built-in defaults)

    Returns:
        Configured FastAPI application.
    """
    config = config or CosmosLabConfig()
    if client is None:
        from cosmoslab.client.sdk import CosmosSdkClient
        client = CosmosSdkClient(config.connection)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.client.close()

    app = FastAPI(
        title="CosmosLab",
        description="Items API over a Cosmos DB container",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.client = client
    app.state.resource = config.api.resource

    @app.get("/")
    async def root():
        """Root endpoint with service information."""
        resource = config.api.resource
        return {
            "name": "CosmosLab",
            "version": __version__,
            "endpoint": config.connection.endpoint,
            "database": resource.database_name,
            "container": resource.container_name,
            "items": "/api/items",
            "documentation": "/docs",
            "health": "/health",
        }

    app.include_router(items_router)

    return app


def main():
    """Main entry point for the CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
