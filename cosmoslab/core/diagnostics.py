"""
Error classification and diagnostic reporting.

`classify` maps any failure to an `ErrorRecord`; it is a pure function of the
error's status code, message and transport code. `DiagnosticReporter` prints
the record with endpoint/database/container context and chooses the process
exit code, including the reserved code for the known schema defect.
"""

import logging
import sys
from typing import Optional, TextIO

from cosmoslab.client.base import ServiceError, transport_code
from .logging_config import log_with_context
from .models import DiagnosticContext, ErrorCategory, ErrorRecord, ExitCode

logger = logging.getLogger(__name__)

# Fingerprint of the emulator defect where the backing Postgres schema is missing
SCHEMA_MISSING_FINGERPRINT = 'schema "cosmos_api" does not exist'
SCHEMA_MISSING_STATUS = 500

REPRO_SENTINEL = "REPRODUCED: Found the cosmos_api schema error!"


class WorkloadError(Exception):
    """A workload step completed but its result was wrong."""


def is_schema_missing_defect(status_code: Optional[int], message: str) -> bool:
    """True when status and message match the schema-missing defect."""
    return (
        status_code == SCHEMA_MISSING_STATUS
        and SCHEMA_MISSING_FINGERPRINT in (message or "").lower()
    )


def classify(error: BaseException) -> ErrorRecord:
    """
    Assign a failure to an `ErrorCategory`.

    Rules, first match wins:
    1. status 500 with the schema-missing message -> SCHEMA_MISSING_DEFECT
    2. status 404 -> NOT_FOUND
    3. transport failure without a status code -> TRANSIENT
    4. anything else -> UNKNOWN

    Args:
        error: Any exception raised by a client or workload step

    Returns:
        ErrorRecord for the failure
    """
    if isinstance(error, ServiceError):
        status_code = error.status_code
        message = error.message
        activity_id = error.activity_id
        request_charge = error.request_charge
        code = error.transport_code
        is_transport = error.is_transport_failure
    else:
        status_code = getattr(error, "status_code", None)
        if not isinstance(status_code, int):
            status_code = None
        message = str(error) or type(error).__name__
        activity_id = None
        request_charge = None
        code = transport_code(error) if isinstance(error, OSError) else None
        is_transport = status_code is None and isinstance(error, OSError)

    if is_schema_missing_defect(status_code, message):
        category = ErrorCategory.SCHEMA_MISSING_DEFECT
    elif status_code == 404:
        category = ErrorCategory.NOT_FOUND
    elif is_transport:
        category = ErrorCategory.TRANSIENT
    else:
        category = ErrorCategory.UNKNOWN

    return ErrorRecord(
        category=category,
        message=message,
        status_code=status_code,
        activity_id=activity_id,
        request_charge=request_charge,
        transport_code=code,
    )


def exit_code_for(record: ErrorRecord) -> ExitCode:
    """Reserved code for the schema defect, generic failure otherwise."""
    if record.category == ErrorCategory.SCHEMA_MISSING_DEFECT:
        return ExitCode.SCHEMA_MISSING_DEFECT
    return ExitCode.FAILURE


class DiagnosticReporter:
    """
    Writes one diagnostic block per failure.

    The block goes to ``stream`` (stdout by default) so CI logs capture it
    next to the command output; the same data is logged with structured
    context.
    """

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream

    def _write(self, line: str = "") -> None:
        print(line, file=self.stream or sys.stdout)

    def report(self, record: ErrorRecord, context: DiagnosticContext) -> ExitCode:
        """
        Report a fatal failure.

        Args:
            record: Classified failure
            context: Endpoint/database/container the run was using

        Returns:
            Exit code the process should terminate with
        """
        code = exit_code_for(record)

        log_with_context(
            logger,
            logging.ERROR,
            f"Cosmos DB operation failed ({record.category.value}): {record.message}",
            category=record.category.value,
            endpoint=context.endpoint,
            database=context.database_id,
            container=context.container_id,
            state=context.state.value if context.state else None,
            status_code=record.status_code,
            activity_id=record.activity_id,
            request_charge=record.request_charge,
            transport_code=record.transport_code,
            exit_code=int(code),
        )

        self._write("=" * 60)
        self._write(f"Cosmos DB operation failed: {record.category.value}")
        self._write(f"  endpoint:       {context.endpoint}")
        self._write(f"  database:       {context.database_id}")
        self._write(f"  container:      {context.container_id}")
        if context.state:
            self._write(f"  step:           {context.state.value}")
        self._write(f"  status code:    {record.status_code if record.status_code is not None else '-'}")
        if record.transport_code:
            self._write(f"  transport code: {record.transport_code}")
        if record.activity_id:
            self._write(f"  activity id:    {record.activity_id}")
        if record.request_charge is not None:
            self._write(f"  request charge: {record.request_charge} RUs")
        self._write(f"  message:        {record.message}")
        if record.transport_code == "ECONNREFUSED":
            self._write(f"  hint:           Make sure the Cosmos DB emulator is running on {context.endpoint}")
        self._write(f"  exit code:      {int(code)}")
        self._write("=" * 60)

        if record.category == ErrorCategory.SCHEMA_MISSING_DEFECT:
            self._write(REPRO_SENTINEL)

        return code
