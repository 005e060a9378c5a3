"""REST façade over a Cosmos DB container."""

from .routes import router

__all__ = ["router"]
