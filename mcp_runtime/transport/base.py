"""Transport contract shared by the stdio, HTTP and SSE channels.

A transport only moves JSON-RPC envelopes. It never interprets them: every
inbound message is handed to the ``on_message`` callback (the correlator) and
an unexpected end of the channel is reported once through ``on_close``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

import structlog

from mcp_runtime.models import ServerDefinition

log = structlog.get_logger(__name__)

MessageHandler = Callable[[dict[str, Any]], None]
CloseHandler = Callable[[int | None, str | None], None]


class Transport(ABC):
    """One open channel to one server.

    Attributes:
        definition: The server definition this channel was built from.
        server_id: Shortcut for ``definition.id``.
    """

    def __init__(self, definition: ServerDefinition) -> None:
        self.definition = definition
        self.server_id = definition.id
        self._on_message: MessageHandler | None = None
        self._on_close: CloseHandler | None = None
        self._closed_reported = False

    def bind(self, on_message: MessageHandler, on_close: CloseHandler | None = None) -> None:
        """Wire inbound messages and channel loss to their consumers."""
        self._on_message = on_message
        self._on_close = on_close

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether the channel can currently carry messages."""

    @abstractmethod
    async def open(self) -> None:
        """Open the channel.

        Raises:
            TransportError: If the process cannot be spawned or the
                connection cannot be established.
        """

    @abstractmethod
    async def send(self, message: dict[str, Any]) -> None:
        """Send one JSON-RPC envelope.

        Raises:
            TransportError: If the message cannot be delivered.
        """

    @abstractmethod
    async def close(self) -> None:
        """Release the channel. Idempotent; never reports ``on_close``."""

    def _deliver(self, message: Any) -> None:
        if isinstance(message, list):
            for item in message:
                self._deliver(item)
            return
        if not isinstance(message, dict):
            log.debug("mcp_message_ignored", server=self.server_id, message=repr(message)[:200])
            return
        if self._on_message is not None:
            self._on_message(message)

    def _report_closed(self, exit_code: int | None, error: str | None) -> None:
        if self._closed_reported:
            return
        self._closed_reported = True
        if self._on_close is not None:
            self._on_close(exit_code, error)
