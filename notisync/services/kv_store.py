"""
Persistent key-value backend.

The sync core only needs two operations, `get(key)` and `set(key, value)`,
and either may fail (locked database, full disk, quota). Callers are expected
to wrap this backend in a ResilientStore rather than use it directly.
"""

from typing import Any, Optional, Protocol

from sqlalchemy.engine import Engine
from sqlmodel import Session

from notisync.core.typing import utc_now
from notisync.models.kv_entry import KeyValueEntry


class KeyValueBackend(Protocol):
    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any) -> None: ...


class SQLKeyValueBackend:
    """
    KeyValueBackend stored in the KeyValueEntry table.

    Reads return None for a missing key. Each set() is its own transaction;
    there is no isolation across a get() followed by a set().
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    async def get(self, key: str) -> Optional[Any]:
        with Session(self.engine) as session:
            entry = session.get(KeyValueEntry, key)
            return entry.value if entry else None

    async def set(self, key: str, value: Any) -> None:
        with Session(self.engine) as session:
            entry = session.get(KeyValueEntry, key)
            if entry is None:
                entry = KeyValueEntry(key=key, value=value)
            else:
                entry.value = value
                entry.updated_at = utc_now()
            session.add(entry)
            session.commit()
