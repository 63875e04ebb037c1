"""
HTTP client for the remote notification service.

Endpoints:
- GET    /api/notifications/unread   - {"notifications": [...]}
- POST   /claude-status/mark-read    - body {"folder": "..."}
- DELETE /claude-status/all          - mark everything read

The client only moves bytes: it returns the httpx.Response and leaves
classification (2xx vs not, parse errors) to the caller. Transport problems
surface as httpx.TransportError subclasses.
"""

from typing import Optional

import httpx

UNREAD_PATH = "/api/notifications/unread"
MARK_READ_PATH = "/claude-status/mark-read"
MARK_ALL_READ_PATH = "/claude-status/all"


class NotificationClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        installation_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        headers = {"X-Requested-With": "XMLHttpRequest"}
        if installation_id:
            headers["X-Installation-Id"] = installation_id
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    def set_installation_id(self, installation_id: str) -> None:
        self._client.headers["X-Installation-Id"] = installation_id

    async def fetch_unread(self) -> httpx.Response:
        return await self._client.get(UNREAD_PATH)

    async def mark_read(self, folder: str) -> httpx.Response:
        return await self._client.post(MARK_READ_PATH, json={"folder": folder})

    async def mark_all_read(self) -> httpx.Response:
        return await self._client.delete(MARK_ALL_READ_PATH)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "NotificationClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
