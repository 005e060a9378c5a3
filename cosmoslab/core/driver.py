"""
Operation driver.

Runs one end-to-end pass against a Cosmos DB endpoint:

    Init -> Probing -> Provisioning -> Inserting -> Querying -> (Batching) -> Done

Any step may move the driver to Failed; Done and Failed are terminal. Every
failure goes through the classifier and the reporter, which decide the exit
code.
"""

import dataclasses
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from cosmoslab.client.base import ContainerRef, DatabaseClient
from .diagnostics import DiagnosticReporter, WorkloadError, classify
from .logging_config import clear_correlation_id, set_correlation_id
from .models import (
    ConnectionConfig,
    DiagnosticContext,
    DriverState,
    ErrorCategory,
    ErrorRecord,
    ExitCode,
    ProbeOutcome,
    ProvisioningResult,
    ResourceIdentity,
)
from .prober import ConnectivityProber
from .provisioner import ResourceProvisioner

logger = logging.getLogger(__name__)

TERMINAL_STATES = (DriverState.DONE, DriverState.FAILED)


def strip_system_properties(item: Dict[str, Any]) -> Dict[str, Any]:
    """Drop service-generated ``_rid``, ``_etag``, ... properties."""
    return {key: value for key, value in item.items() if not key.startswith("_")}


class OperationDriver:
    """
    Sequences probe, provisioning and the workload for one run.

    Attributes:
        state: Current state
        history: States visited, in order
        run_id: Identifier namespacing every item this run writes
        probe_outcome: Result of the probing step
        provisioning: Result of the provisioning step
        error: Classified failure, when the run failed
    """

    def __init__(
        self,
        config: ConnectionConfig,
        identity: ResourceIdentity,
        client: DatabaseClient,
        max_attempts: int = 10,
        probe_delay: float = 3.0,
        run_batch: bool = True,
        batch_size: int = 5,
        reporter: Optional[DiagnosticReporter] = None,
        sleep: Callable[[float], None] = time.sleep,
        run_id: Optional[str] = None,
    ):
        self.config = config
        self.identity = identity
        self.client = client
        self.max_attempts = max_attempts
        self.probe_delay = probe_delay
        self.run_batch = run_batch
        self.batch_size = batch_size
        self.reporter = reporter or DiagnosticReporter()
        self.run_id = run_id or uuid.uuid4().hex[:12]

        self.prober = ConnectivityProber(client, sleep=sleep, endpoint=config.endpoint)
        self.provisioner = ResourceProvisioner(client)

        self.state = DriverState.INIT
        self.history: List[DriverState] = [DriverState.INIT]
        self.probe_outcome: Optional[ProbeOutcome] = None
        self.provisioning: Optional[ProvisioningResult] = None
        self.error: Optional[ErrorRecord] = None

    def _transition(self, state: DriverState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Cannot leave terminal state {self.state.value}")
        logger.debug(f"Driver {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def _context(self, state: DriverState) -> DiagnosticContext:
        return DiagnosticContext(
            endpoint=self.config.endpoint,
            database_id=self.identity.database_name,
            container_id=self.identity.container_name,
            state=state,
        )

    def _fail(self, record: ErrorRecord) -> ExitCode:
        failed_step = self.state
        self._transition(DriverState.FAILED)
        self.error = record
        return self.reporter.report(record, self._context(failed_step))

    def run(self) -> ExitCode:
        """
        Execute the run.

        Returns:
            ExitCode.SUCCESS, ExitCode.FAILURE or ExitCode.SCHEMA_MISSING_DEFECT

        Raises:
            RuntimeError: If the driver has already run
        """
        if self.state != DriverState.INIT:
            raise RuntimeError("Driver has already run")

        set_correlation_id(self.run_id)
        try:
            return self._run()
        finally:
            clear_correlation_id()

    def _run(self) -> ExitCode:
        logger.info(
            f"Starting run {self.run_id} against {self.config.endpoint} "
            f"({self.identity.database_name}/{self.identity.container_name})"
        )

        self._transition(DriverState.PROBING)
        try:
            self.probe_outcome = self.prober.probe(self.max_attempts, self.probe_delay)
        except Exception as e:
            return self._fail(classify(e))
        if not self.probe_outcome.succeeded:
            last = self.probe_outcome.last_error
            if last is None:
                record = ErrorRecord(ErrorCategory.TRANSIENT, "Endpoint did not become reachable")
            else:
                record = dataclasses.replace(last, category=ErrorCategory.TRANSIENT)
            return self._fail(record)

        try:
            self._transition(DriverState.PROVISIONING)
            self.provisioning = self.provisioner.ensure(self.identity)
            container = ContainerRef(
                self.identity.database_name,
                self.identity.container_name,
                self.identity.partition_key_path,
            )

            self._transition(DriverState.INSERTING)
            item = self._insert_record(container)

            self._transition(DriverState.QUERYING)
            self._query_record(container, item)

            if self.run_batch:
                self._transition(DriverState.BATCHING)
                self._run_batch(container)
        except Exception as e:
            return self._fail(classify(e))

        self._transition(DriverState.DONE)
        logger.info(f"Run {self.run_id} completed successfully")
        return ExitCode.SUCCESS

    # ========== Workload ==========

    def build_item(self, item_id: str, partition_key_value: Any, **fields: Any) -> Dict[str, Any]:
        """Build an item with ``partition_key_value`` at the partition key path."""
        item: Dict[str, Any] = {"id": item_id, **fields}
        target = item
        segments = self.identity.partition_key_segments
        for segment in segments[:-1]:
            target = target.setdefault(segment, {})
        target[segments[-1]] = partition_key_value
        return item

    def _partition_value_for(self, item_id: str, suffix: str) -> str:
        # A container partitioned on /id can only use the id itself
        if self.identity.partition_key_path == "/id":
            return item_id
        return f"{self.identity.item_id_prefix}-{self.run_id}-{suffix}"

    def _insert_record(self, container: ContainerRef) -> Dict[str, Any]:
        item_id = f"{self.identity.item_id_prefix}-{self.run_id}"
        partition_key_value = self._partition_value_for(item_id, "user")
        item = self.build_item(item_id, partition_key_value, name="Test User")

        logger.info(f"Inserting item {item_id}")
        self.client.create_item(container, item, partition_key_value)
        charge = self.client.last_request_charge
        if charge is not None:
            logger.info(f"Created item {item_id}. Request charge: {charge} RUs")
        return item

    def _query_by_partition(self, container: ContainerRef, value: Any) -> List[Dict[str, Any]]:
        query = f"SELECT * FROM c WHERE c.{self.identity.partition_attribute} = @value"
        return [
            strip_system_properties(doc)
            for doc in self.client.query_items(
                container,
                query,
                parameters=[{"name": "@value", "value": value}],
            )
        ]

    def _query_record(self, container: ContainerRef, item: Dict[str, Any]) -> None:
        partition_key_value = self._partition_value_for(item["id"], "user")
        results = self._query_by_partition(container, partition_key_value)
        if results != [item]:
            raise WorkloadError(
                f"Expected exactly the inserted item {item['id']} from query, got {len(results)} item(s)"
            )
        logger.info(f"Found item {item['id']} by {self.identity.partition_attribute}")

    def _run_batch(self, container: ContainerRef) -> None:
        if self.identity.partition_key_path == "/id" and self.batch_size > 1:
            logger.warning("Skipping batch: items partitioned on /id cannot share a partition key")
            return

        batch_key = f"{self.identity.item_id_prefix}-{self.run_id}-batch"
        items = [
            self.build_item(f"{batch_key}-{i}", batch_key, name=f"Batch Item {i}", value=i * 10)
            for i in range(1, self.batch_size + 1)
        ]

        logger.info(f"Creating {len(items)} items in one batch under partition {batch_key}")
        self.client.create_items_batch(container, items, batch_key)

        results = self._query_by_partition(container, batch_key)
        if len(results) != len(items):
            raise WorkloadError(
                f"Batch was not atomic: {len(results)} of {len(items)} items found after commit"
            )
        logger.info(f"All {len(items)} batch items found")
