"""
Idempotent provisioner.

Ensures a database and container exist by reading first and creating only on
404, so the caller learns whether an existing (possibly persistent) emulator
state was reused.
"""

import logging
from typing import Callable, Tuple, TypeVar

from cosmoslab.client.base import ContainerRef, DatabaseClient, ServiceError
from .models import ProvisioningResult, ResourceIdentity

logger = logging.getLogger(__name__)

T = TypeVar("T")

NOT_FOUND = 404
CONFLICT = 409


def _read_or_create(
    description: str,
    read: Callable[[], T],
    create: Callable[[], T],
) -> Tuple[T, bool]:
    """
    Read a resource, creating it when the read returns 404.

    A 409 from the create means another caller created it first; the
    resource is then re-read and treated as pre-existing.

    Returns:
        (resource, existed)

    Raises:
        ServiceError: For any status other than 404 on read or 409 on create
    """
    try:
        return read(), True
    except ServiceError as e:
        if e.status_code != NOT_FOUND:
            raise

    logger.info(f"{description} not found, creating it")
    try:
        return create(), False
    except ServiceError as e:
        if e.status_code != CONFLICT:
            raise
        logger.info(f"{description} was created concurrently, using existing one")
        return read(), True


class ResourceProvisioner:
    """Creates the database and container named by a `ResourceIdentity` if absent."""

    def __init__(self, client: DatabaseClient):
        self.client = client

    def ensure(self, identity: ResourceIdentity) -> ProvisioningResult:
        """
        Ensure the database and container exist.

        Args:
            identity: Database, container and partition key path

        Returns:
            ProvisioningResult recording what already existed

        Raises:
            ServiceError: Any failure other than "not found"
        """
        database = identity.database_name
        container = identity.container_name

        _, database_existed = _read_or_create(
            f"Database '{database}'",
            lambda: self.client.read_database(database),
            lambda: self.client.create_database(database),
        )

        ref, container_existed = _read_or_create(
            f"Container '{database}/{container}'",
            lambda: self.client.read_container(database, container),
            lambda: self.client.create_container(database, container, identity.partition_key_path),
        )

        if isinstance(ref, ContainerRef) and ref.partition_key_path != identity.partition_key_path:
            logger.warning(
                f"Container '{database}/{container}' is partitioned on {ref.partition_key_path}, "
                f"expected {identity.partition_key_path}"
            )

        result = ProvisioningResult(
            database_existed=database_existed,
            container_existed=container_existed,
        )
        logger.info(
            f"Provisioned {database}/{container}: "
            f"database {'reused' if database_existed else 'created'}, "
            f"container {'reused' if container_existed else 'created'}"
        )
        return result


def ensure(identity: ResourceIdentity, client: DatabaseClient) -> ProvisioningResult:
    """Shorthand for ``ResourceProvisioner(client).ensure(identity)``."""
    return ResourceProvisioner(client).ensure(identity)
