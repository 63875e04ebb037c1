from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class NotificationRecord(BaseModel):
    """
    One unread notification as served by the remote service.

    Identity is (folder, timestamp); any extra fields the service sends are
    kept and written back unchanged.
    """

    model_config = ConfigDict(extra="allow")

    folder: Optional[str] = None
    timestamp: Optional[int] = None  # epoch milliseconds
    status: Optional[str] = None
    message: Optional[str] = None


class NotificationsResponse(BaseModel):
    """Body of GET /api/notifications/unread."""

    model_config = ConfigDict(extra="ignore")

    notifications: List[NotificationRecord] = Field(default_factory=list)

    @field_validator("notifications", mode="before")
    @classmethod
    def null_means_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class NotificationStatus(BaseModel):
    """Answer to a per-folder status lookup."""

    has_notification: bool
    status: Optional[str] = None
    notification: Optional[dict[str, Any]] = None


class MutationResult(BaseModel):
    success: bool
    error: Optional[str] = None
