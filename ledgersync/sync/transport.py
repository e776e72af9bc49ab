"""Remote transport: the request/response boundary to the store of record.

``HttpTransport`` talks to the remote API over httpx. Each call is a single
attempt with a fixed timeout; retry scheduling belongs to the operation
queue, so failures are raised as typed errors instead of being retried here.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx

from ..errors import (
    AuthenticationError,
    RemoteConflictError,
    RemoteRejectionError,
    RemoteValidationError,
    TransportError,
)
from ..store.models import OperationType, PendingOperation
from .conflict_detector import RemoteSnapshot

logger = logging.getLogger(__name__)


@dataclass
class Credentials:
    """User credential passed with every remote call."""

    token: str
    user_id: str = ""

    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


class RemoteTransport(ABC):
    """Interface the sync driver uses to reach the remote store."""

    @abstractmethod
    async def send_operation(
        self, op: PendingOperation, credentials: Credentials
    ) -> dict[str, Any]:
        """Apply one queued operation remotely.

        Returns:
            The remote record (at least its ``id``) for creates and updates;
            an empty dict for deletes.
        """

    @abstractmethod
    async def fetch_snapshot(self, credentials: Credentials) -> RemoteSnapshot:
        """Fetch the user's full remote dataset."""

    @abstractmethod
    async def fetch_changes(
        self, credentials: Credentials, since: int
    ) -> RemoteSnapshot:
        """Fetch records modified or deleted after ``since`` (epoch ms)."""

    @abstractmethod
    async def replace_snapshot(
        self, data: dict[str, list[dict[str, Any]]], credentials: Credentials
    ) -> dict[str, dict[str, str]]:
        """Replace the remote dataset.

        Returns:
            Remote ids keyed by entity type then local id.
        """

    @abstractmethod
    async def check_connection(self, credentials: Credentials) -> bool:
        """Return True if the remote store is reachable."""

    async def close(self) -> None:
        """Release network resources."""


class HttpTransport(RemoteTransport):
    """RemoteTransport over HTTP/JSON using httpx."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the transport.

        Args:
            base_url: Base URL of the remote API (e.g., "https://api.example.com").
            timeout: Per-request timeout in seconds.
            client: Optional preconfigured client, mainly for tests.
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        credentials: Credentials,
        json_data: Any = None,
        params: dict[str, Any] | None = None,
        allow_not_found: bool = False,
    ) -> Any:
        """Make one HTTP request and map failures onto the error hierarchy.

        Args:
            method: HTTP method.
            path: URL path relative to the base URL.
            credentials: User credential for the Authorization header.
            json_data: Optional JSON body.
            params: Optional query parameters.
            allow_not_found: Treat 404 as success with an empty body.

        Returns:
            Decoded JSON body, or an empty dict for empty responses.
        """
        client = self._get_client()
        try:
            response = await client.request(
                method,
                path,
                json=json_data,
                params=params,
                headers=credentials.headers(),
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"Request timeout: {method} {path}") from e
        except httpx.TransportError as e:
            raise TransportError(f"Connection failed: {method} {path}: {e}") from e

        status = response.status_code
        if 200 <= status < 300:
            if not response.content:
                return {}
            return response.json()

        if status == 404 and allow_not_found:
            return {}

        message = f"HTTP {status} on {method} {path}: {response.text[:200]}"
        if status in (401, 403):
            raise AuthenticationError(message, status)
        if status in (400, 422):
            raise RemoteValidationError(message, status)
        if status == 409:
            try:
                body = response.json()
            except ValueError:
                body = {}
            remote_record = body.get("record") if isinstance(body, dict) else None
            raise RemoteConflictError(message, remote_record, status)
        if status == 429 or status >= 500:
            logger.warning(message)
            raise TransportError(message, status)
        raise RemoteRejectionError(message, status)

    async def send_operation(
        self, op: PendingOperation, credentials: Credentials
    ) -> dict[str, Any]:
        entity_type = op.entity_type.value
        body = op.payload.to_dict()

        if op.type == OperationType.CREATE:
            return await self._request(
                "POST", f"/api/{entity_type}", credentials, json_data=body
            )

        if not op.cloud_id:
            raise RemoteValidationError(
                f"{op.type.value} of {entity_type}/{op.entity_id} has no remote id"
            )
        path = f"/api/{entity_type}/{op.cloud_id}"

        if op.type == OperationType.UPDATE:
            return await self._request("PATCH", path, credentials, json_data=body)
        await self._request("DELETE", path, credentials, allow_not_found=True)
        return {}

    async def fetch_snapshot(self, credentials: Credentials) -> RemoteSnapshot:
        data = await self._request("GET", "/api/sync/snapshot", credentials)
        return RemoteSnapshot.from_dict(data)

    async def fetch_changes(
        self, credentials: Credentials, since: int
    ) -> RemoteSnapshot:
        data = await self._request(
            "GET", "/api/sync/changes", credentials, params={"since": since}
        )
        return RemoteSnapshot.from_dict(data)

    async def replace_snapshot(
        self, data: dict[str, list[dict[str, Any]]], credentials: Credentials
    ) -> dict[str, dict[str, str]]:
        body = await self._request(
            "PUT", "/api/sync/snapshot", credentials, json_data={"records": data}
        )
        return body.get("ids") or {}

    async def check_connection(self, credentials: Credentials) -> bool:
        try:
            await self._request("GET", "/api/health", credentials)
        except TransportError as e:
            logger.debug(f"Remote unreachable: {e}")
            return False
        except RemoteRejectionError as e:
            # Reachable, but the request itself was refused
            logger.debug(f"Remote reachable, health check refused: {e}")
        return True
