"""
Network channel -- authenticated request/response over httpx.

The channel knows nothing about sessions or records. It sends JSON,
attaches a bearer token when given one, and hands back the status code
and the decoded body. Transport failures become ``ConnectivityError``;
every HTTP status, even 5xx, is returned for the caller to interpret.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal, Optional

import httpx
from pydantic import BaseModel, ValidationError

from .errors import ConnectivityError

logger = logging.getLogger("savekeep.channel")

JSON_HEADERS = {
    "Accept": "application/json",
    "Content-Type": "application/json",
}


class ServerReply(BaseModel):
    """The server's standard response envelope."""

    status: Literal["ok", "error"]
    message: Any = None
    data: Any = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


@dataclass
class ChannelResponse:
    """Status code plus decoded JSON body (None if not JSON)."""

    status_code: int
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def server_error(self) -> bool:
        return self.status_code >= 500

    def reply(self) -> Optional[ServerReply]:
        """Parse the body as a ``ServerReply``, or None if it is not one."""
        try:
            return ServerReply.model_validate(self.body)
        except ValidationError as exc:
            logger.warning("Server sent an unexpected envelope: %s", exc)
            return None

    def message(self, default: str = "") -> str:
        """Best-effort human message from the body."""
        if isinstance(self.body, dict) and self.body.get("message"):
            msg = self.body["message"]
            return msg if isinstance(msg, str) else "; ".join(map(str, msg))
        return default


class Channel:
    """Async JSON channel to the SaveKeep server.

    Args:
        base_url: Server root, ending with ``/``.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests pass a MockTransport).
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=JSON_HEADERS,
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> Channel:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def request(
        self,
        method: str,
        path: str,
        *,
        token: Optional[str] = None,
        json: Any = None,
        params: Optional[dict[str, Any]] = None,
    ) -> ChannelResponse:
        """Send one request.

        Args:
            method: HTTP method.
            path: Path relative to the base URL (``api/sync/up``).
            token: Bearer token for the Authorization header.
            json: JSON body.
            params: Query parameters.

        Raises:
            ConnectivityError: If the server could not be reached.
        """
        headers = {"Authorization": f"Bearer {token}"} if token else None
        try:
            response = await self.client.request(
                method, path, headers=headers, json=json, params=params,
            )
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise ConnectivityError(f"Server did not respond: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = None
        logger.debug("%s %s -> %s", method, path, response.status_code)
        return ChannelResponse(status_code=response.status_code, body=body)
