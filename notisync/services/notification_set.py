"""
Notification identity and content-addressed versioning.

A notification's identity is `folder:timestamp`. The version of a set is the
sorted identities joined with "|", so it ignores array order and per-record
key order and changes only when membership or a timestamp changes:

    compute_version([{"folder": "/b", "timestamp": 2}, {"folder": "/a", "timestamp": 1}])
    # -> "/a:1|/b:2"
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Tuple, Union
from urllib.parse import unquote

from notisync.schemas import NotificationRecord

RecordLike = Union[NotificationRecord, Mapping]


def normalize_folder(folder: Any) -> str:
    """
    Canonical form of a folder path for comparisons.

    Trims, URL-decodes, converts backslashes to "/", strips trailing
    slashes and lower-cases. Non-strings normalize to "".
    """
    if not folder or not isinstance(folder, str):
        return ""

    normalized = folder.strip()
    if not normalized:
        return ""

    normalized = unquote(normalized)
    normalized = normalized.replace("\\", "/")
    normalized = normalized.rstrip("/")
    return normalized.lower()


def notification_id(record: Any) -> str:
    """`folder:timestamp`, or "" when either part is missing."""
    if isinstance(record, NotificationRecord):
        folder, timestamp = record.folder, record.timestamp
    elif isinstance(record, Mapping):
        folder, timestamp = record.get("folder"), record.get("timestamp")
    else:
        return ""

    if not folder or timestamp is None:
        return ""
    return f"{folder}:{timestamp}"


def compute_version(records: Optional[Iterable[Any]]) -> str:
    if not records:
        return ""
    ids = [notification_id(record) for record in records]
    return "|".join(sorted(i for i in ids if i))


@dataclass(frozen=True)
class NotificationSet:
    records: Tuple[NotificationRecord, ...] = ()
    version: str = field(default="")

    @classmethod
    def from_records(cls, records: Iterable[RecordLike]) -> "NotificationSet":
        parsed = tuple(
            record if isinstance(record, NotificationRecord) else NotificationRecord.model_validate(record)
            for record in records
        )
        return cls(records=parsed, version=compute_version(parsed))

    @classmethod
    def empty(cls) -> "NotificationSet":
        return cls()

    def __len__(self) -> int:
        return len(self.records)

    def same_version(self, other: "NotificationSet") -> bool:
        """Equal for sync purposes, regardless of order or extra fields."""
        return self.version == other.version

    def to_payload(self) -> List[dict]:
        """Plain dicts for storage and listeners, extra fields included."""
        return [record.model_dump(exclude_unset=True) for record in self.records]

    def find(self, folder: str) -> Optional[NotificationRecord]:
        target = normalize_folder(folder)
        for record in self.records:
            if normalize_folder(record.folder) == target:
                return record
        return None

    def without_folder(self, folder: str) -> "NotificationSet":
        target = normalize_folder(folder)
        return NotificationSet.from_records(r for r in self.records if normalize_folder(r.folder) != target)
