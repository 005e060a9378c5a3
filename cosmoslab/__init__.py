"""
CosmosLab: Cosmos DB emulator connectivity and provisioning harness

Waits for a Cosmos DB endpoint to come up, provisions a database and container,
runs a representative workload, and classifies failures into exit codes that
CI can act on.
"""

__version__ = "0.1.0"
__author__ = "CosmosLab Contributors"

from .core.driver import OperationDriver

__all__ = ["OperationDriver", "__version__"]
