"""
REST façade models.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class TodoItem(BaseModel):
    """Sample item written by ``POST /api/items``."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    title: str = "Sample Todo Item"
    is_completed: bool = Field(default=False, alias="isCompleted")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        alias="createdAt",
    )


class HealthStatus(BaseModel):
    """Response of ``GET /health``."""
    status: str
    database: str
    timestamp: datetime
    detail: Optional[str] = None
    category: Optional[str] = None
