"""
Connectivity prober.

Waits for a Cosmos DB endpoint to answer a lightweight read, retrying with a
fixed delay. A local emulator becomes ready within a short, bounded window,
so the backoff is deliberately not exponential.
"""

import logging
import time
from typing import Callable, Optional

from cosmoslab.client.base import DatabaseClient, ServiceError
from .diagnostics import classify
from .logging_config import log_with_context
from .models import ErrorRecord, ProbeOutcome

logger = logging.getLogger(__name__)


class ConnectivityProber:
    """
    Probes an endpoint until it answers or the attempt budget runs out.

    Only `ServiceError` and `OSError` count as failed attempts; anything else
    is a programming error and propagates.
    """

    def __init__(
        self,
        client: DatabaseClient,
        sleep: Callable[[float], None] = time.sleep,
        endpoint: Optional[str] = None,
    ):
        """
        Initialize the prober.

        Args:
            client: Client used for the round trip
            sleep: Sleep function (injected by tests)
            endpoint: Endpoint shown in progress lines
        """
        self.client = client
        self._sleep = sleep
        self.endpoint = endpoint

    def probe(self, max_attempts: int, delay: float) -> ProbeOutcome:
        """
        Probe until the endpoint answers.

        Args:
            max_attempts: Attempt budget, at least 1
            delay: Seconds to wait between attempts

        Returns:
            ProbeOutcome with the number of attempts used and, on failure,
            the last classified error

        Raises:
            ValueError: If max_attempts < 1 or delay < 0
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if delay < 0:
            raise ValueError("delay must be non-negative")

        target = self.endpoint or "Cosmos DB endpoint"
        last_error: Optional[ErrorRecord] = None

        for attempt in range(1, max_attempts + 1):
            try:
                self.client.read_account_metadata()
            except (ServiceError, OSError) as e:
                last_error = classify(e)
                log_with_context(
                    logger,
                    logging.WARNING,
                    f"Probe attempt {attempt}/{max_attempts} against {target} failed: {last_error.message}",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    category=last_error.category.value,
                    status_code=last_error.status_code,
                    transport_code=last_error.transport_code,
                )
                if attempt < max_attempts:
                    self._sleep(delay)
                continue

            log_with_context(
                logger,
                logging.INFO,
                f"Probe attempt {attempt}/{max_attempts} against {target} succeeded",
                attempt=attempt,
                max_attempts=max_attempts,
            )
            return ProbeOutcome(succeeded=True, attempts_used=attempt)

        logger.error(f"{target} did not become reachable after {max_attempts} attempts")
        return ProbeOutcome(succeeded=False, attempts_used=max_attempts, last_error=last_error)
