"""JSON-RPC request/response correlation.

The correlator owns the pending-request map for every attached server. Each
outbound request gets a strictly increasing integer id, a future, and exactly
one deadline timer. Whichever arrives first, the matching response or the
timer, settles the future and removes the entry; the loser finds nothing to
settle and is a no-op.

Inbound messages without an id but with a method are notifications and are
handed to the notification callback. Requests initiated by the server
(``ping`` and anything else carrying both ``id`` and ``method``) are answered
here.

Example:
    >>> correlator = MessageCorrelator(timeout=30.0)
    >>> correlator.attach("github", transport)
    >>> result = await correlator.call("github", "tools/list")
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from typing import Any

import structlog

from mcp_runtime.exceptions import (
    NotRunningError,
    ProtocolError,
    RequestCancelledError,
    RequestTimeoutError,
    TransportError,
)
from mcp_runtime.transport import CloseHandler, Transport

log = structlog.get_logger(__name__)

JSONRPC_VERSION = "2.0"
METHOD_NOT_FOUND = -32601

NotificationHandler = Callable[[str, str, dict[str, Any]], None]


@dataclass
class PendingRequest:
    """An outbound request waiting for its response or its deadline."""

    id: int
    server_id: str
    method: str
    future: asyncio.Future[Any]
    timer: asyncio.TimerHandle | None = None


class MessageCorrelator:
    """Matches responses to requests and routes notifications.

    Attributes:
        timeout: Default per-request deadline in seconds.
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        on_notification: NotificationHandler | None = None,
    ) -> None:
        self.timeout = timeout
        self.on_notification = on_notification
        self._transports: dict[str, Transport] = {}
        self._pending: dict[int, PendingRequest] = {}
        self._last_id = 0
        self._background: set[asyncio.Task[None]] = set()

    # === Attachment ===

    def attach(self, server_id: str, transport: Transport, on_close: CloseHandler | None = None) -> None:
        """Route a transport's inbound messages through this correlator."""
        transport.bind(partial(self.handle_message, server_id), on_close)
        self._transports[server_id] = transport

    def detach(self, server_id: str, reason: str = "server stopped") -> int:
        """Forget a server's transport and cancel its in-flight requests.

        Returns:
            Number of pending requests that were cancelled.
        """
        self._transports.pop(server_id, None)
        cancelled = 0
        for request_id in [rid for rid, p in self._pending.items() if p.server_id == server_id]:
            if self._settle(request_id, error=RequestCancelledError(server_id, f"request cancelled: {reason}")):
                cancelled += 1
        if cancelled:
            log.info("mcp_requests_cancelled", server=server_id, count=cancelled, reason=reason)
        return cancelled

    def is_attached(self, server_id: str) -> bool:
        return server_id in self._transports

    def pending_count(self, server_id: str | None = None) -> int:
        if server_id is None:
            return len(self._pending)
        return sum(1 for p in self._pending.values() if p.server_id == server_id)

    # === Outbound ===

    def _next_id(self) -> int:
        self._last_id += 1
        return self._last_id

    async def call(
        self,
        server_id: str,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send a request and wait for its result.

        Raises:
            NotRunningError: If no transport is attached for the server.
            TransportError: If the envelope cannot be sent.
            ProtocolError: If the server answers with a JSON-RPC error.
            RequestTimeoutError: If no response arrives before the deadline.
            RequestCancelledError: If the server is detached meanwhile.
        """
        transport = self._transports.get(server_id)
        if transport is None:
            raise NotRunningError(server_id)

        loop = asyncio.get_running_loop()
        request_id = self._next_id()
        deadline = self.timeout if timeout is None else timeout
        pending = PendingRequest(id=request_id, server_id=server_id, method=method, future=loop.create_future())
        pending.timer = loop.call_later(deadline, self._expire, request_id, deadline)
        self._pending[request_id] = pending

        envelope: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
        if params is not None:
            envelope["params"] = params

        log.debug("mcp_request", server=server_id, method=method, request_id=request_id)

        try:
            await transport.send(envelope)
        except TransportError as e:
            self._settle(request_id, error=e)

        try:
            return await pending.future
        finally:
            # Caller cancellation must not leave the entry or its timer behind.
            if request_id in self._pending:
                self._discard(request_id)

    async def notify(self, server_id: str, method: str, params: dict[str, Any] | None = None) -> None:
        """Send a notification (no id, no response expected)."""
        transport = self._transports.get(server_id)
        if transport is None:
            raise NotRunningError(server_id)

        envelope: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
        if params is not None:
            envelope["params"] = params
        await transport.send(envelope)

    # === Inbound ===

    def handle_message(self, server_id: str, message: dict[str, Any]) -> None:
        """Dispatch one inbound envelope from a server's transport."""
        has_id = message.get("id") is not None
        method = message.get("method")

        if has_id and method is None:
            self._handle_response(server_id, message)
        elif method is not None and not has_id:
            params = message.get("params") or {}
            log.debug("mcp_notification", server=server_id, method=method)
            if self.on_notification is not None:
                self.on_notification(server_id, method, params)
        elif method is not None:
            self._answer_server_request(server_id, message)
        else:
            log.debug("mcp_message_ignored", server=server_id, message=str(message)[:200])

    def _handle_response(self, server_id: str, message: dict[str, Any]) -> None:
        request_id = message.get("id")
        pending = self._pending.get(request_id) if isinstance(request_id, int) else None
        if pending is None or pending.server_id != server_id:
            log.debug("mcp_response_dropped", server=server_id, request_id=request_id)
            return

        error = message.get("error")
        if error is not None:
            if isinstance(error, dict):
                exc = ProtocolError(
                    server_id,
                    str(error.get("message", "Unknown error")),
                    code=error.get("code"),
                    data=error.get("data"),
                )
            else:
                exc = ProtocolError(server_id, str(error))
            self._settle(pending.id, error=exc)
        else:
            self._settle(pending.id, result=message.get("result"))

    def _answer_server_request(self, server_id: str, message: dict[str, Any]) -> None:
        method = message["method"]
        response: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": message["id"]}
        if method == "ping":
            response["result"] = {}
        else:
            response["error"] = {"code": METHOD_NOT_FOUND, "message": f"Method not found: {method}"}

        transport = self._transports.get(server_id)
        if transport is None:
            return
        task = asyncio.get_running_loop().create_task(self._send_quietly(server_id, transport, response))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _send_quietly(self, server_id: str, transport: Transport, message: dict[str, Any]) -> None:
        try:
            await transport.send(message)
        except TransportError as e:
            log.warning("mcp_reply_failed", server=server_id, error=str(e))

    # === Settlement ===

    def _settle(self, request_id: int, *, result: Any = None, error: BaseException | None = None) -> bool:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return False
        if pending.timer is not None:
            pending.timer.cancel()
        if pending.future.done():
            return False
        if error is not None:
            pending.future.set_exception(error)
        else:
            pending.future.set_result(result)
        return True

    def _expire(self, request_id: int, timeout: float) -> None:
        pending = self._pending.get(request_id)
        if pending is None:
            return
        log.warning("mcp_request_timeout", server=pending.server_id, method=pending.method, request_id=request_id)
        self._settle(
            request_id,
            error=RequestTimeoutError(pending.server_id, f"Request {pending.method} timed out after {timeout}s"),
        )

    def _discard(self, request_id: int) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is not None and pending.timer is not None:
            pending.timer.cancel()
