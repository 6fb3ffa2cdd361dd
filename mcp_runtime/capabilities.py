"""Per-server capability cache, tool categories and tool search.

Discovery asks a server for its tools, resources and prompts with three
independent ``list`` calls. A failing call (a server without prompts, say) is
logged and leaves only that list empty. Discovery passes for one server are
serialised by a per-server lock, so a ``list_changed`` refresh never
interleaves with the pass started by ``start``.

Tools are sorted into exactly one of seven categories by ``classify_tool``, a
pure function over the tool name and its serialized input schema.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, ValidationError

from mcp_runtime.correlator import MessageCorrelator
from mcp_runtime.exceptions import MCPError, ProtocolError
from mcp_runtime.models import Prompt, Resource, SearchResult, Tool

log = structlog.get_logger(__name__)

# Pagination guard against servers that keep returning a cursor.
MAX_LIST_PAGES = 50

# Classification priority: the first category with a matching keyword wins.
CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("filesystem", ("file", "directory", "folder", "path", "read", "write", "fs")),
    ("git", ("git", "commit", "branch", "diff", "merge", "repo")),
    ("search", ("search", "find", "query", "grep", "lookup")),
    ("database", ("database", "sql", "table", "postgres", "mysql", "sqlite", "mongo", "db")),
    ("api", ("api", "http", "request", "fetch", "url", "endpoint", "webhook")),
    ("execution", ("exec", "run", "shell", "command", "process", "terminal", "script")),
)
DEFAULT_CATEGORY = "other"
CATEGORIES: tuple[str, ...] = tuple(name for name, _ in CATEGORY_KEYWORDS) + (DEFAULT_CATEGORY,)


class CapabilityKind(str, Enum):
    TOOLS = "tools"
    RESOURCES = "resources"
    PROMPTS = "prompts"

    @property
    def list_method(self) -> str:
        return f"{self.value}/list"


ALL_KINDS: tuple[CapabilityKind, ...] = (CapabilityKind.TOOLS, CapabilityKind.RESOURCES, CapabilityKind.PROMPTS)

_MODELS: dict[CapabilityKind, type[BaseModel]] = {
    CapabilityKind.TOOLS: Tool,
    CapabilityKind.RESOURCES: Resource,
    CapabilityKind.PROMPTS: Prompt,
}


def classify_tool(name: str, input_schema: Any = None) -> str:
    """Return the category for a tool.

    Both the name and the JSON-serialized input schema are searched for the
    keywords of each category in ``CATEGORY_KEYWORDS`` order.
    """
    schema_text = json.dumps(input_schema, sort_keys=True, default=str) if input_schema else ""
    haystack = f"{name} {schema_text}".lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in haystack for keyword in keywords):
            return category
    return DEFAULT_CATEGORY


def infer_categories(text: str) -> set[str]:
    """Every category whose keywords occur in free text."""
    lowered = text.lower()
    return {category for category, keywords in CATEGORY_KEYWORDS if any(k in lowered for k in keywords)}


@dataclass
class ServerCapabilities:
    """Cached capability lists for one server."""

    tools: list[Tool] = field(default_factory=list)
    resources: list[Resource] = field(default_factory=list)
    prompts: list[Prompt] = field(default_factory=list)
    categories: dict[str, list[str]] = field(default_factory=dict)

    def rebuild_categories(self) -> None:
        index: dict[str, list[str]] = {}
        for tool in self.tools:
            index.setdefault(classify_tool(tool.name, tool.input_schema), []).append(tool.name)
        self.categories = index


@dataclass
class SearchCacheEntry:
    result: SearchResult
    timestamp: float


class CapabilityIndex:
    """Capability cache for all servers, plus the tool search cache.

    Attributes:
        search_ttl: Seconds a cached search result stays valid.
        clock: Monotonic time source; injectable for tests.
    """

    def __init__(
        self,
        correlator: MessageCorrelator,
        *,
        search_ttl: float = 300.0,
        fallback_limit: int = 10,
        clock: Callable[[], float] = time.monotonic,
        is_running: Callable[[str], bool] | None = None,
        on_change: Callable[[str, CapabilityKind], None] | None = None,
    ) -> None:
        self.correlator = correlator
        self.search_ttl = search_ttl
        self.fallback_limit = fallback_limit
        self.clock = clock
        self.is_running = is_running or (lambda _server_id: True)
        self.on_change = on_change
        self._servers: dict[str, ServerCapabilities] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._search_cache: dict[str, SearchCacheEntry] = {}

    # === Discovery ===

    def _lock_for(self, server_id: str) -> asyncio.Lock:
        if server_id not in self._locks:
            self._locks[server_id] = asyncio.Lock()
        return self._locks[server_id]

    async def discover(self, server_id: str, kinds: Iterable[CapabilityKind] = ALL_KINDS) -> None:
        """Refresh the requested capability lists of one server.

        Each list call is attempted regardless of the others failing.
        """
        kinds = tuple(kinds)
        async with self._lock_for(server_id):
            results = await asyncio.gather(
                *(self._fetch(server_id, kind) for kind in kinds),
                return_exceptions=True,
            )

            caps = self._servers.setdefault(server_id, ServerCapabilities())
            for kind, outcome in zip(kinds, results, strict=True):
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, (MCPError, ValidationError)):
                        raise outcome
                    log.warning("mcp_discovery_failed", server=server_id, kind=kind.value, error=str(outcome))
                    items: list[Any] = []
                else:
                    items = outcome
                setattr(caps, kind.value, items)
                if kind is CapabilityKind.TOOLS:
                    caps.rebuild_categories()

            self._search_cache.clear()

        log.info(
            "mcp_capabilities_discovered",
            server=server_id,
            tools=len(caps.tools),
            resources=len(caps.resources),
            prompts=len(caps.prompts),
        )
        if self.on_change is not None:
            for kind in kinds:
                self.on_change(server_id, kind)

    async def _fetch(self, server_id: str, kind: CapabilityKind) -> list[Any]:
        model = _MODELS[kind]
        items: list[Any] = []
        cursor: str | None = None

        for _ in range(MAX_LIST_PAGES):
            params = {"cursor": cursor} if cursor else {}
            result = await self.correlator.call(server_id, kind.list_method, params)
            result = result or {}
            if not isinstance(result, dict):
                raise ProtocolError(server_id, f"Malformed {kind.list_method} result")
            for raw in result.get(kind.value) or []:
                if not isinstance(raw, dict):
                    continue
                items.append(model.model_validate({**raw, "serverId": server_id}))
            cursor = result.get("nextCursor")
            if not cursor:
                break

        return items

    def clear(self, server_id: str) -> None:
        """Drop every cached list of a server."""
        if self._servers.pop(server_id, None) is not None:
            self._search_cache.clear()

    # === Per-server reads ===

    def get(self, server_id: str) -> ServerCapabilities:
        return self._servers.get(server_id) or ServerCapabilities()

    def get_tools(self, server_id: str) -> list[Tool]:
        return list(self.get(server_id).tools)

    def get_resources(self, server_id: str) -> list[Resource]:
        return list(self.get(server_id).resources)

    def get_prompts(self, server_id: str) -> list[Prompt]:
        return list(self.get(server_id).prompts)

    def get_categories(self, server_id: str) -> dict[str, int]:
        """Tool count per non-empty category, for lazy browsing."""
        return {category: len(names) for category, names in self.get(server_id).categories.items()}

    def get_tools_by_category(self, server_id: str, category: str) -> list[Tool]:
        caps = self.get(server_id)
        names = set(caps.categories.get(category, []))
        return [tool for tool in caps.tools if tool.name in names]

    # === Cross-server reads ===

    def _running(self) -> list[tuple[str, ServerCapabilities]]:
        return [(sid, caps) for sid, caps in self._servers.items() if self.is_running(sid)]

    def all_tools(self) -> list[Tool]:
        return [tool for _, caps in self._running() for tool in caps.tools]

    def all_resources(self) -> list[Resource]:
        return [resource for _, caps in self._running() for resource in caps.resources]

    def all_prompts(self) -> list[Prompt]:
        return [prompt for _, caps in self._running() for prompt in caps.prompts]

    def search_tools(self, query: str) -> SearchResult:
        """Case-insensitive substring search over running servers.

        No ranking: matches come in server order, then list order.
        """
        needle = query.lower()
        result = SearchResult(query=query)

        def hit(*values: str | None) -> bool:
            return any(value and needle in value.lower() for value in values)

        for _, caps in self._running():
            result.tools.extend(t for t in caps.tools if hit(t.name, t.description))
            result.resources.extend(r for r in caps.resources if hit(r.name, r.description, r.uri))
            result.prompts.extend(p for p in caps.prompts if hit(p.name, p.description))

        return result

    def search_tools_cached(self, query: str) -> SearchResult:
        """``search_tools`` behind a TTL cache keyed by the literal query."""
        now = self.clock()
        entry = self._search_cache.get(query)
        if entry is not None and now - entry.timestamp <= self.search_ttl:
            return entry.result

        result = self.search_tools(query)
        self._search_cache[query] = SearchCacheEntry(result=result, timestamp=now)
        return result

    def invalidate_search_cache(self) -> None:
        self._search_cache.clear()

    def get_relevant_tools(self, server_id: str, context: str, limit: int | None = None) -> list[Tool]:
        """Tools of one server that look relevant to a free-text context.

        A direct name/description match ranks above a match by inferred
        category; tools matching neither are left out. When nothing
        matches, the first ``fallback_limit`` tools are returned instead.
        """
        tools = self.get(server_id).tools
        lowered = context.lower().strip()
        wanted = infer_categories(lowered)

        scored: list[tuple[int, Tool]] = []
        for tool in tools:
            name = tool.name.lower()
            description = (tool.description or "").lower()
            if lowered and (name in lowered or lowered in name or lowered in description):
                scored.append((2, tool))
            elif classify_tool(tool.name, tool.input_schema) in wanted:
                scored.append((1, tool))

        if not scored:
            return list(tools[: self.fallback_limit if limit is None else limit])

        scored.sort(key=lambda pair: pair[0], reverse=True)
        ranked = [tool for _, tool in scored]
        return ranked[:limit] if limit is not None else ranked
