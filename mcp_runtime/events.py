"""Typed lifecycle events for MCP servers.

Consumers subscribe to a narrow stream of ``ServerEvent`` records, either for
every server or for a single server id, instead of listening on a global
untyped bus.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

log = structlog.get_logger(__name__)


class EventKind(str, Enum):
    STARTING = "starting"
    STARTED = "started"
    STOPPED = "stopped"
    ERROR = "error"
    TOOLS_CHANGED = "tools_changed"
    RESOURCES_CHANGED = "resources_changed"
    PROMPTS_CHANGED = "prompts_changed"
    MESSAGE = "message"


@dataclass(frozen=True, slots=True)
class ServerEvent:
    """One lifecycle or capability event for a server."""

    server_id: str
    kind: EventKind
    payload: dict[str, Any] = field(default_factory=dict)


Listener = Callable[[ServerEvent], None]


class EventChannel:
    """Fan-out of server events to subscribed listeners."""

    def __init__(self) -> None:
        self._listeners: list[tuple[str | None, Listener]] = []

    def subscribe(self, listener: Listener, server_id: str | None = None) -> Callable[[], None]:
        """Register a listener, optionally scoped to one server.

        Args:
            listener: Called synchronously with each matching event.
            server_id: Only deliver events for this server when given.

        Returns:
            A callable that removes the subscription.
        """
        entry = (server_id, listener)
        self._listeners.append(entry)

        def unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return unsubscribe

    def emit(self, event: ServerEvent) -> None:
        for server_id, listener in list(self._listeners):
            if server_id is not None and server_id != event.server_id:
                continue
            try:
                listener(event)
            except Exception as e:
                log.error(
                    "event_listener_failed",
                    server=event.server_id,
                    kind=event.kind.value,
                    error=str(e),
                    exc_info=True,
                )

    def __len__(self) -> int:
        return len(self._listeners)
