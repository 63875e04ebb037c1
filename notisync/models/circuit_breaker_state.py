"""
Circuit breaker state persistence model.

Stores circuit breaker state to survive restarts, so a restarted worker
keeps its failure memory instead of immediately hammering a failing
service again.
"""

from typing import Optional
from sqlmodel import Field, SQLModel
from datetime import datetime

from notisync.core.typing import utc_now


class CircuitBreakerState(SQLModel, table=True):
    """Persisted circuit breaker state."""

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(unique=True, index=True)  # Circuit name (e.g., "notifications_api")
    status: str = Field(default="closed")  # "closed", "open", "half_open"
    consecutive_failures: int = Field(default=0)
    last_failure_at: Optional[datetime] = Field(default=None)
    current_backoff_ms: int = Field(default=0)
    updated_at: datetime = Field(default_factory=utc_now)
