"""Server-sent events transport.

The client opens a long-lived ``GET`` event stream. The server first sends an
``endpoint`` event naming the URL that accepts client messages as ``POST``
bodies; responses and notifications then arrive as ``message`` events on the
stream. The stream is opened lazily, on the first ``send``.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any
from urllib.parse import urljoin

import httpx
import structlog

from mcp_runtime.exceptions import TransportError
from mcp_runtime.models import ServerDefinition
from mcp_runtime.transport.base import Transport

log = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class SSEEvent:
    event: str
    data: str
    id: str | None = None


class SSEDecoder:
    """Incremental ``text/event-stream`` line decoder.

    Feed it one line at a time (without the newline); a blank line completes
    the pending event, which is then returned.
    """

    def __init__(self) -> None:
        self._event = ""
        self._data: list[str] = []
        self._id: str | None = None

    def feed(self, line: str) -> SSEEvent | None:
        line = line.rstrip("\r")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            self._id = value
        return None

    def _dispatch(self) -> SSEEvent | None:
        if not self._data and not self._event:
            return None
        event = SSEEvent(event=self._event or "message", data="\n".join(self._data), id=self._id)
        self._event = ""
        self._data = []
        return event


def decode_sse_text(text: str) -> list[SSEEvent]:
    """Decode a complete event-stream body."""
    decoder = SSEDecoder()
    events = [event for line in text.splitlines() if (event := decoder.feed(line)) is not None]
    if (last := decoder.feed("")) is not None:
        events.append(last)
    return events


class SSETransport(Transport):
    """Event-stream transport, connected on first use."""

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
        self._listen_task: asyncio.Task[None] | None = None
        self._endpoint: asyncio.Future[str] | None = None
        self._connect_lock = asyncio.Lock()
        self._closing = False

    @property
    def connected(self) -> bool:
        return (
            self._endpoint is not None
            and self._endpoint.done()
            and not self._endpoint.exception()
            and self._listen_task is not None
            and not self._listen_task.done()
        )

    @property
    def is_open(self) -> bool:
        return self._client is not None and not self._closing

    async def open(self) -> None:
        if not self.definition.url:
            raise TransportError(self.server_id, "sse transport requires a url")
        if self._client is None:
            self._client = httpx.AsyncClient(headers=self.definition.headers, timeout=self.timeout)
        self._closing = False
        self._closed_reported = False

    async def _ensure_connected(self) -> str:
        async with self._connect_lock:
            if self.connected:
                assert self._endpoint is not None
                return self._endpoint.result()

            loop = asyncio.get_running_loop()
            self._endpoint = loop.create_future()
            self._listen_task = asyncio.create_task(self._listen(), name=f"mcp-sse-{self.server_id}")

            try:
                return await asyncio.wait_for(asyncio.shield(self._endpoint), timeout=self.timeout)
            except asyncio.TimeoutError as e:
                self._listen_task.cancel()
                raise TransportError(self.server_id, "No endpoint event received from SSE stream") from e

    async def _listen(self) -> None:
        assert self._client is not None and self._endpoint is not None
        url = self.definition.url or ""
        endpoint = self._endpoint
        error: str | None = None

        try:
            async with self._client.stream(
                "GET", url, headers={"Accept": "text/event-stream"}, timeout=None
            ) as response:
                if response.status_code >= 400:
                    raise TransportError(self.server_id, f"SSE connect failed: HTTP {response.status_code}")

                log.info("mcp_sse_connected", server=self.server_id, url=url)
                decoder = SSEDecoder()
                async for line in response.aiter_lines():
                    event = decoder.feed(line)
                    if event is not None:
                        self._handle_event(event, url)
        except TransportError as e:
            error = e.detail
            if not endpoint.done():
                endpoint.set_exception(e)
        except httpx.HTTPError as e:
            error = str(e) or type(e).__name__
            if not endpoint.done():
                endpoint.set_exception(TransportError(self.server_id, f"SSE connect failed: {error}"))

        if not endpoint.done():
            endpoint.set_exception(TransportError(self.server_id, "SSE stream closed before endpoint event"))
        # Retrieve the exception so an unawaited future does not warn.
        if endpoint.done() and not endpoint.cancelled():
            endpoint.exception()

        if not self._closing:
            log.warning("mcp_sse_stream_closed", server=self.server_id, error=error)
            self._report_closed(None, error or "SSE stream closed")

    def _handle_event(self, event: SSEEvent, base_url: str) -> None:
        if event.event == "endpoint":
            assert self._endpoint is not None
            if not self._endpoint.done():
                self._endpoint.set_result(urljoin(base_url, event.data.strip()))
            return

        if event.event != "message":
            log.debug("mcp_sse_event_ignored", server=self.server_id, event=event.event)
            return

        try:
            message = json.loads(event.data)
        except json.JSONDecodeError:
            log.debug("mcp_sse_bad_message", server=self.server_id, data=event.data[:500])
            return
        self._deliver(message)

    async def send(self, message: dict[str, Any]) -> None:
        if not self.is_open or self._client is None:
            raise TransportError(self.server_id, "Transport is closed")

        endpoint = await self._ensure_connected()

        try:
            response = await self._client.post(endpoint, json=message)
        except httpx.HTTPError as e:
            raise TransportError(self.server_id, f"POST to {endpoint} failed: {e}") from e

        if not response.is_success:
            raise TransportError(self.server_id, f"POST to {endpoint} returned HTTP {response.status_code}")

    async def close(self) -> None:
        self._closing = True
        if self._listen_task is not None:
            self._listen_task.cancel()
            await asyncio.gather(self._listen_task, return_exceptions=True)
            self._listen_task = None
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None if self._owns_client else self._client
        self._endpoint = None
