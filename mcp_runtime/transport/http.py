"""HTTP request/response transport.

Each JSON-RPC envelope is one ``POST`` to the server's endpoint. The reply
body (plain JSON, or a short ``text/event-stream`` body) is handed to the
correlator before ``send`` returns. A non-2xx status is a transport failure,
never a protocol error.
"""

from __future__ import annotations

import json
from typing import Any

import httpx
import structlog

from mcp_runtime.exceptions import TransportError
from mcp_runtime.models import ServerDefinition
from mcp_runtime.transport.base import Transport
from mcp_runtime.transport.sse import decode_sse_text

log = structlog.get_logger(__name__)

SESSION_HEADER = "Mcp-Session-Id"


class HTTPTransport(Transport):
    """Stateless POST-per-message transport."""

    def __init__(
        self,
        definition: ServerDefinition,
        *,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(definition)
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._session_id: str | None = None
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def session_id(self) -> str | None:
        return self._session_id

    async def open(self) -> None:
        if not self.definition.url:
            raise TransportError(self.server_id, "http transport requires a url")
        if self._client is None:
            self._client = httpx.AsyncClient(headers=self.definition.headers, timeout=self.timeout)
        self._open = True

    async def send(self, message: dict[str, Any]) -> None:
        if not self._open or self._client is None:
            raise TransportError(self.server_id, "Transport is closed")

        headers = {"Accept": "application/json, text/event-stream"}
        if self._session_id:
            headers[SESSION_HEADER] = self._session_id

        try:
            response = await self._client.post(self.definition.url or "", json=message, headers=headers)
        except httpx.HTTPError as e:
            raise TransportError(self.server_id, f"HTTP request failed: {str(e) or type(e).__name__}") from e

        if not response.is_success:
            raise TransportError(self.server_id, f"HTTP {response.status_code} from {self.definition.url}")

        if session_id := response.headers.get(SESSION_HEADER):
            self._session_id = session_id

        if not response.content.strip():
            return

        content_type = response.headers.get("content-type", "")
        if content_type.startswith("text/event-stream"):
            for event in decode_sse_text(response.text):
                if event.event == "message" and event.data:
                    self._deliver_text(event.data)
        else:
            self._deliver_text(response.text)

    def _deliver_text(self, text: str) -> None:
        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            log.debug("mcp_http_bad_body", server=self.server_id, body=text[:500])
            return
        self._deliver(message)

    async def close(self) -> None:
        self._open = False
        self._session_id = None
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
