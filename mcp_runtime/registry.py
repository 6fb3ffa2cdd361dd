"""Remote MCP server catalog with a TTL-bounded disk cache.

The registry client mirrors a remote catalog of installable servers. A
successful ``sync`` replaces the in-memory catalog wholesale and writes a
timestamped snapshot::

    {"timestamp": "2025-01-15T10:30:00+00:00", "entries": [{...}, ...]}

A failed sync logs and keeps serving whatever was loaded before, and does not
touch ``last_sync``, so ``needs_sync`` keeps reporting the old age.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import aiofiles
import httpx
import structlog
from pydantic import ValidationError

from mcp_runtime.config.settings import RuntimeSettings
from mcp_runtime.models import RegistryEntry, Scope, ServerDefinition, ServerMetadata, TransportType

log = structlog.get_logger(__name__)

META_KEY = "com.anthropic.api/mcp-registry"

# Remote types accepted for each transport, in preference order.
REMOTE_TYPES: dict[TransportType, tuple[str, ...]] = {
    TransportType.HTTP: ("streamable-http", "http"),
    TransportType.SSE: ("sse",),
}


def determine_transport(entry: RegistryEntry) -> TransportType:
    """Pick the transport a generated definition should use."""
    if "streamable-http" in entry.transport or "http" in entry.transport:
        return TransportType.HTTP
    if "sse" in entry.transport:
        return TransportType.SSE
    if "websocket" in entry.transport:
        return TransportType.WEBSOCKET
    return TransportType.STDIO


def package_command(registry_type: str, identifier: str) -> tuple[str, list[str]] | None:
    """Launch command for a published package, or None if unsupported."""
    if registry_type == "npm":
        return "npx", ["-y", identifier]
    if registry_type in ("pip", "pypi"):
        return "uvx", [identifier]
    if registry_type in ("docker", "oci"):
        return "docker", ["run", "-i", "--rm", identifier]
    return None


class RegistryClient:
    """Syncs, caches and searches the remote server catalog.

    Attributes:
        settings: Provides the registry URL, cache path and TTL.
        now: Wall-clock source (timezone-aware); injectable for tests.
    """

    def __init__(
        self,
        settings: RuntimeSettings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or RuntimeSettings()
        self.now = now or (lambda: datetime.now(UTC))
        self._client = client
        self._entries: dict[str, RegistryEntry] = {}
        self._last_sync: datetime | None = None

    @property
    def last_sync(self) -> datetime | None:
        return self._last_sync

    @property
    def cache_size(self) -> int:
        return len(self._entries)

    # === Cache ===

    async def initialize(self) -> None:
        """Create the cache directory and load the last snapshot."""
        try:
            self.settings.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            log.error("registry_cache_dir_failed", path=str(self.settings.cache_dir), error=str(e))
        await self.load_cache()

    async def load_cache(self) -> bool:
        """Load the on-disk snapshot. Returns False when there is none."""
        path = self.settings.registry_cache_path
        try:
            async with aiofiles.open(path) as f:
                data = json.loads(await f.read())
            entries = [RegistryEntry.model_validate(raw) for raw in data["entries"]]
            timestamp = datetime.fromisoformat(data["timestamp"])
        except (OSError, ValueError, KeyError, TypeError, ValidationError) as e:
            log.debug("registry_cache_unavailable", path=str(path), error=str(e))
            return False

        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=UTC)
        self._entries = {entry.id: entry for entry in entries}
        self._last_sync = timestamp
        log.info("registry_cache_loaded", count=len(self._entries))
        return True

    async def _save_cache(self, timestamp: datetime) -> None:
        path = self.settings.registry_cache_path
        payload = {
            "timestamp": timestamp.isoformat(),
            "entries": [entry.to_json_dict() for entry in self._entries.values()],
        }
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".tmp")
            async with aiofiles.open(tmp_path, "w") as f:
                await f.write(json.dumps(payload, indent=2))
            tmp_path.replace(path)
        except OSError as e:
            log.error("registry_cache_write_failed", path=str(path), error=str(e))

    # === Sync ===

    async def sync(self) -> bool:
        """Fetch the full catalog and replace the local copy.

        Returns:
            True on success; False when the fetch failed and the previous
            catalog is still being served.
        """
        url = f"{self.settings.registry_url.rstrip('/')}/servers"
        params = {"version": "latest", "visibility": "commercial", "limit": "100"}
        log.info("registry_sync_started", url=url)

        try:
            if self._client is not None:
                response = await self._client.get(url, params=params, headers={"Accept": "application/json"})
            else:
                async with httpx.AsyncClient(timeout=self.settings.request_timeout) as client:
                    response = await client.get(url, params=params, headers={"Accept": "application/json"})
            response.raise_for_status()
            data = response.json()
            entries = [self._parse_item(item) for item in data["servers"]]
        except (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError, ValidationError) as e:
            log.error("registry_sync_failed", error=str(e), cached=len(self._entries))
            if self._entries:
                log.warning("registry_using_cached_data", count=len(self._entries))
            return False

        timestamp = self.now()
        self._entries = {entry.id: entry for entry in entries}
        self._last_sync = timestamp
        await self._save_cache(timestamp)

        log.info("registry_synced", count=len(self._entries))
        return True

    @staticmethod
    def _parse_item(item: dict[str, Any]) -> RegistryEntry:
        server = item.get("server") or item
        meta = (item.get("_meta") or {}).get(META_KEY) or {}
        packages = server.get("packages") or None
        remotes = server.get("remotes") or None

        return RegistryEntry(
            id=server.get("name") or server["id"],
            name=meta.get("displayName") or server.get("title") or server.get("name") or server["id"],
            description=meta.get("oneLiner") or server.get("description") or "",
            publisher=meta.get("publisher") or "Unknown",
            version=server.get("version") or "1.0.0",
            transport=[remote["type"] for remote in remotes] if remotes else ["stdio"],
            categories=meta.get("categories") or [],
            tags=meta.get("tags") or [],
            installs=meta.get("installs") or 0,
            rating=meta.get("rating") or 0,
            documentation=meta.get("documentation") or server.get("documentation"),
            repository=server.get("repository"),
            packages=packages,
            remotes=remotes,
            environmentVariables=(packages[0].get("environmentVariables") if packages else None),
        )

    def needs_sync(self) -> bool:
        if self._last_sync is None:
            return True
        return self.now() - self._last_sync > timedelta(seconds=self.settings.registry_ttl)

    # === Queries ===

    def search(
        self,
        query: str = "",
        *,
        category: str | None = None,
        transport: str | None = None,
        tags: list[str] | None = None,
    ) -> list[RegistryEntry]:
        """Text search narrowed by AND'ed filters, most popular first."""
        needle = query.lower()
        results: list[RegistryEntry] = []

        for entry in self._entries.values():
            matches = (
                needle in entry.name.lower()
                or needle in entry.description.lower()
                or any(needle in tag.lower() for tag in entry.tags)
            )
            if not matches:
                continue
            if category and category not in entry.categories:
                continue
            if transport and transport not in entry.transport:
                continue
            if tags and not all(tag in entry.tags for tag in tags):
                continue
            results.append(entry)

        results.sort(key=lambda e: e.popularity, reverse=True)
        return results

    def get_entry(self, entry_id: str) -> RegistryEntry | None:
        return self._entries.get(entry_id)

    def get_all_categories(self) -> list[str]:
        return sorted({category for entry in self._entries.values() for category in entry.categories})

    def get_popular_entries(self, limit: int = 10) -> list[RegistryEntry]:
        return sorted(self._entries.values(), key=lambda e: e.installs, reverse=True)[:limit]

    def get_top_rated(self, limit: int = 10) -> list[RegistryEntry]:
        rated = [e for e in self._entries.values() if e.rating > 0]
        return sorted(rated, key=lambda e: e.rating, reverse=True)[:limit]

    # === Config generation ===

    def generate_server_config(
        self,
        entry_id: str,
        *,
        scope: Scope = Scope.LOCAL,
        env_vars: dict[str, str] | None = None,
        custom_url: str | None = None,
    ) -> ServerDefinition | None:
        """Derive a runnable definition from a catalog entry.

        A declared remote (http, sse) is preferred; otherwise the first
        supported package is launched locally. Only variables that the
        entry declares *and* the caller supplied are copied into ``env``.

        Returns:
            The definition, or None if the entry is unknown or offers
            neither a usable remote nor a launchable package.
        """
        entry = self._entries.get(entry_id)
        if entry is None:
            return None

        fields: dict[str, Any] = {}
        transport = determine_transport(entry)

        if transport in REMOTE_TYPES:
            remote_url = next(
                (r.url for r in entry.remotes or [] if r.type in REMOTE_TYPES[transport]),
                None,
            )
            if remote_url is not None:
                fields = {"transport": transport, "url": custom_url or remote_url}

        if not fields:
            for package in entry.packages or []:
                launch = package_command(package.registry_type, package.identifier)
                if launch is not None:
                    fields = {"transport": TransportType.STDIO, "command": launch[0], "args": launch[1]}
                    break

        if not fields:
            log.warning("registry_entry_not_installable", entry=entry_id)
            return None

        supplied = env_vars or {}
        env = {
            var.name: supplied[var.name]
            for var in entry.environment_variables or []
            if supplied.get(var.name)
        }

        return ServerDefinition(
            id=entry_id,
            name=entry.name,
            description=entry.description,
            scope=scope,
            env=env,
            metadata=ServerMetadata(
                category=entry.categories[0] if entry.categories else None,
                tags=list(entry.tags),
                author=entry.publisher,
                version=entry.version,
                homepage=entry.documentation,
            ),
            **fields,
        )
