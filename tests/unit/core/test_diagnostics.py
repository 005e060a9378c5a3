"""
Tests for error classification and diagnostic reporting.
"""

import errno
import io
import ssl

import pytest

from cosmoslab.client.base import BatchError, ServiceError
from cosmoslab.core.diagnostics import (
    REPRO_SENTINEL,
    DiagnosticReporter,
    WorkloadError,
    classify,
    exit_code_for,
    is_schema_missing_defect,
)
from cosmoslab.core.models import (
    DiagnosticContext,
    DriverState,
    ErrorCategory,
    ErrorRecord,
    ExitCode,
)

SCHEMA_MESSAGE = 'Response status code does not indicate success: InternalServerError (500); ' \
                 'Reason: (ERROR: schema "cosmos_api" does not exist)'


@pytest.fixture
def context():
    return DiagnosticContext(
        endpoint="https://localhost:8081/",
        database_id="MyDb",
        container_id="Users",
        state=DriverState.INSERTING,
    )


class TestClassify:
    """Tests for classify()."""

    def test_schema_missing_defect(self):
        """Test 500 with the cosmos_api schema message is the reserved category."""
        record = classify(ServiceError(SCHEMA_MESSAGE, status_code=500, activity_id="abc"))

        assert record.category == ErrorCategory.SCHEMA_MISSING_DEFECT
        assert record.status_code == 500
        assert record.activity_id == "abc"

    def test_schema_match_is_case_insensitive(self):
        """Test the fingerprint match ignores case."""
        record = classify(ServiceError('SCHEMA "COSMOS_API" DOES NOT EXIST', status_code=500))

        assert record.category == ErrorCategory.SCHEMA_MISSING_DEFECT

    def test_schema_message_with_other_status_is_unknown(self):
        """Test the fingerprint requires status 500."""
        record = classify(ServiceError(SCHEMA_MESSAGE, status_code=503))

        assert record.category == ErrorCategory.UNKNOWN

    def test_other_500_is_unknown(self):
        """Test an unrelated internal server error is not the defect."""
        record = classify(ServiceError("Something else broke", status_code=500))

        assert record.category == ErrorCategory.UNKNOWN

    def test_not_found(self):
        """Test 404 maps to NOT_FOUND."""
        record = classify(ServiceError("Resource Not Found", status_code=404))

        assert record.category == ErrorCategory.NOT_FOUND

    def test_transport_failure_is_transient(self):
        """Test a transport failure without status is transient."""
        record = classify(ServiceError("Connection refused", transport_code="ECONNREFUSED"))

        assert record.category == ErrorCategory.TRANSIENT
        assert record.transport_code == "ECONNREFUSED"
        assert record.status_code is None

    def test_plain_os_error_is_transient(self):
        """Test a raw socket error is transient with its errno name."""
        error = ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused")
        record = classify(error)

        assert record.category == ErrorCategory.TRANSIENT
        assert record.transport_code == "ECONNREFUSED"

    def test_ssl_error_is_transient(self):
        """Test TLS failures are transient."""
        record = classify(ssl.SSLError("certificate verify failed"))

        assert record.category == ErrorCategory.TRANSIENT
        assert record.transport_code == "SSL"

    def test_conflict_is_unknown(self):
        """Test statuses without a dedicated category are unknown."""
        record = classify(ServiceError("Conflict", status_code=409, request_charge=1.24))

        assert record.category == ErrorCategory.UNKNOWN
        assert record.request_charge == 1.24

    def test_workload_error_is_unknown(self):
        """Test failed workload assertions are unknown."""
        record = classify(WorkloadError("Expected exactly one item"))

        assert record.category == ErrorCategory.UNKNOWN
        assert record.message == "Expected exactly one item"

    def test_batch_error_keeps_status(self):
        """Test batch failures classify like any other service error."""
        record = classify(BatchError(SCHEMA_MESSAGE, failed_index=0, status_code=500))

        assert record.category == ErrorCategory.SCHEMA_MISSING_DEFECT

    def test_arbitrary_exception(self):
        """Test classify is total over exceptions."""
        record = classify(RuntimeError())

        assert record.category == ErrorCategory.UNKNOWN
        assert record.message == "RuntimeError"

    def test_classify_is_deterministic(self):
        """Test the same input always yields the same record."""
        error = ServiceError(SCHEMA_MESSAGE, status_code=500, activity_id="a1")

        assert classify(error) == classify(error)


class TestExitCodes:
    """Tests for exit code selection."""

    def test_defect_has_reserved_code(self):
        record = ErrorRecord(ErrorCategory.SCHEMA_MISSING_DEFECT, "x", status_code=500)
        assert exit_code_for(record) == ExitCode.SCHEMA_MISSING_DEFECT

    @pytest.mark.parametrize("category", [
        ErrorCategory.TRANSIENT,
        ErrorCategory.NOT_FOUND,
        ErrorCategory.UNKNOWN,
    ])
    def test_other_categories_generic_failure(self, category):
        assert exit_code_for(ErrorRecord(category, "x")) == ExitCode.FAILURE

    def test_is_schema_missing_defect_handles_empty_message(self):
        assert is_schema_missing_defect(500, "") is False
        assert is_schema_missing_defect(None, SCHEMA_MESSAGE) is False


class TestDiagnosticReporter:
    """Tests for DiagnosticReporter."""

    def test_report_defect_prints_sentinel(self, context):
        """Test the repro sentinel is printed for the defect."""
        stream = io.StringIO()
        record = classify(ServiceError(SCHEMA_MESSAGE, status_code=500, activity_id="act-1"))

        code = DiagnosticReporter(stream).report(record, context)

        output = stream.getvalue()
        assert code == ExitCode.SCHEMA_MISSING_DEFECT
        assert REPRO_SENTINEL in output
        assert "act-1" in output
        assert "https://localhost:8081/" in output
        assert "MyDb" in output
        assert "Users" in output
        assert "inserting" in output

    def test_report_generic_failure_has_no_sentinel(self, context):
        """Test other failures never print the sentinel."""
        stream = io.StringIO()
        record = classify(ServiceError("Conflict", status_code=409))

        code = DiagnosticReporter(stream).report(record, context)

        assert code == ExitCode.FAILURE
        assert REPRO_SENTINEL not in stream.getvalue()
        assert "409" in stream.getvalue()

    def test_report_connection_refused_adds_hint(self, context):
        """Test the operator hint for a refused connection."""
        stream = io.StringIO()
        record = classify(ServiceError("Connection refused", transport_code="ECONNREFUSED"))

        DiagnosticReporter(stream).report(record, context)

        assert "Make sure the Cosmos DB emulator is running on https://localhost:8081/" in stream.getvalue()

    def test_report_other_transport_failure_has_no_hint(self, context):
        """Test the hint only appears for refused connections."""
        stream = io.StringIO()
        record = classify(ServiceError("timed out", transport_code="TIMEOUT"))

        DiagnosticReporter(stream).report(record, context)

        assert "Make sure the Cosmos DB emulator" not in stream.getvalue()
        assert "TIMEOUT" in stream.getvalue()

    def test_report_logs_error(self, context, caplog):
        """Test the failure is also logged with its category."""
        record = ErrorRecord(ErrorCategory.NOT_FOUND, "gone", status_code=404)

        with caplog.at_level("ERROR", logger="cosmoslab.core.diagnostics"):
            DiagnosticReporter(io.StringIO()).report(record, context)

        assert "not_found" in caplog.text
        assert "gone" in caplog.text
