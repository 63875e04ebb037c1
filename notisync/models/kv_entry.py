"""
Key-value entry model.

Backs the persistent key-value interface (get/set by key) used for the
cached notification set and the installation id.
"""

from typing import Any, Optional
from datetime import datetime

from sqlmodel import Column, Field, JSON, SQLModel

from notisync.core.typing import utc_now


class KeyValueEntry(SQLModel, table=True):
    """One stored value per key; the value is any JSON-serializable object."""

    key: str = Field(primary_key=True)
    value: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=utc_now)
