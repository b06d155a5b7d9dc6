from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any, Iterable, Mapping, Protocol, Sequence

from ..core import metrics
from ..core.config import ProviderSettings, ToolSettings
from ..core.logging import get_logger
from ..schemas.tools import DiscoveredTool, ToolInvocation
from .aliases import canonical_tool_name, map_tool_call
from .exceptions import (
    CircuitBreakerTrippedError,
    ProviderProtocolError,
    ToolError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolTimeoutError,
    ToolUnsafeError,
)
from .protocol import ProviderConnection
from .safety import ToolSafetyPolicy

__all__ = ["CircuitBreaker", "ProviderClient", "ToolRouter", "guess_providers"]

logger = get_logger(name=__name__)

MEMORY_TOOLS = frozenset(
    {
        "create_entities",
        "create_relations",
        "add_observations",
        "delete_entities",
        "delete_observations",
        "delete_relations",
        "read_graph",
        "search_nodes",
        "open_nodes",
    }
)


class ProviderClient(Protocol):
    provider_id: str

    async def list_tools(self) -> list[dict[str, Any]]: ...

    async def call_tool(self, name: str, arguments: Mapping[str, Any]) -> str: ...

    async def close(self) -> None: ...


Connector = Callable[[str, ProviderSettings], Awaitable[ProviderClient]]


class CircuitBreaker:
    """Counts consecutive tool failures; reaching the threshold is fatal for the run.

    One breaker belongs to one top-level run and every child it fans out to.
    """

    def __init__(self, threshold: int, *, on_trip: Callable[[], None] | None = None) -> None:
        self._threshold = max(1, threshold)
        self._on_trip = on_trip
        self._failure_count = 0
        self._tripped = False
        self._lock = asyncio.Lock()

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def tripped(self) -> bool:
        return self._tripped

    async def before_invocation(self, tool: str) -> None:
        async with self._lock:
            if self._tripped:
                raise CircuitBreakerTrippedError(self._failure_count, tool=tool)

    async def record_success(self) -> None:
        async with self._lock:
            self._failure_count = 0

    async def record_failure(self, tool: str) -> None:
        async with self._lock:
            self._failure_count += 1
            if self._failure_count < self._threshold:
                return
            # Siblings still in flight at the trip fail here without counting a second trip.
            if not self._tripped:
                self._tripped = True
                metrics.increment_circuit_breaker_trip()
                if self._on_trip is not None:
                    self._on_trip()
                logger.error("circuit_breaker_tripped", tool=tool, failures=self._failure_count)
            raise CircuitBreakerTrippedError(self._failure_count, tool=tool)


def guess_providers(tool: str, provider_ids: Sequence[str]) -> list[str]:
    """Candidate providers for a tool without a catalog binding, in try order."""
    lowered = tool.lower()
    preferred: str | None = None
    if lowered.startswith("git_") or "git" in lowered:
        preferred = "git"
    elif lowered in MEMORY_TOOLS:
        preferred = "memory"
    elif lowered == "get_current_time" or "time" in lowered:
        preferred = "time"
    if preferred is not None:
        return [provider for provider in provider_ids if provider == preferred]
    return list(provider_ids)


async def _spawn_connection(provider_id: str, settings: ProviderSettings, *, tools: ToolSettings) -> ProviderClient:
    return await ProviderConnection.spawn(
        provider_id,
        settings,
        request_timeout=tools.request_timeout_seconds,
        client_name=tools.client_name,
        client_version=tools.client_version,
    )


class ToolRouter:
    """Resolves abstract tool calls onto provider tools.

    Catalog entries give an explicit binding; names without one are routed by
    provider-name guesses and the first provider that succeeds is remembered.
    Every invocation passes the safety policy and the caller's circuit breaker.
    """

    def __init__(
        self,
        settings: ToolSettings,
        *,
        connector: Connector | None = None,
        safety: ToolSafetyPolicy | None = None,
    ) -> None:
        self._settings = settings
        self._connector = connector
        self._safety = safety or ToolSafetyPolicy()
        self._breaker_trips = 0
        self._providers: dict[str, ProviderClient] = {}
        self._tools: dict[str, DiscoveredTool] = {}
        self._route_cache: dict[str, str] = {}
        self._failed_providers: dict[str, str] = {}

    def new_breaker(self) -> CircuitBreaker:
        """A fresh breaker for one run, using the configured threshold."""
        return CircuitBreaker(self._settings.circuit_breaker_threshold, on_trip=self._count_trip)

    def _count_trip(self) -> None:
        self._breaker_trips += 1

    @property
    def provider_ids(self) -> list[str]:
        return list(self._providers)

    @property
    def tools(self) -> Mapping[str, DiscoveredTool]:
        return dict(self._tools)

    async def start(self) -> None:
        """Connect to every enabled provider concurrently and build the catalog."""
        configured = [(pid, cfg) for pid, cfg in self._settings.providers.items() if cfg.enabled]
        results = await asyncio.gather(
            *(self._connect(provider_id, provider_settings) for provider_id, provider_settings in configured),
            return_exceptions=True,
        )
        for (provider_id, _), outcome in zip(configured, results):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                self._failed_providers[provider_id] = str(outcome)
                logger.warning("provider_start_failed", provider=provider_id, error=str(outcome))
                continue
            await self.add_provider(outcome)
        logger.info(
            "tool_router_started",
            providers=self.provider_ids,
            tools=len(self._tools),
            failed=sorted(self._failed_providers),
        )

    async def _connect(self, provider_id: str, provider_settings: ProviderSettings) -> ProviderClient:
        if self._connector is not None:
            return await self._connector(provider_id, provider_settings)
        return await _spawn_connection(provider_id, provider_settings, tools=self._settings)

    async def add_provider(self, client: ProviderClient) -> list[DiscoveredTool]:
        """Register a connected provider and merge its catalog."""
        self._providers[client.provider_id] = client
        try:
            catalog = await client.list_tools()
        except ToolError as exc:
            logger.warning("provider_discovery_failed", provider=client.provider_id, error=str(exc))
            self._failed_providers[client.provider_id] = str(exc)
            return []
        discovered = [self._register_tool(client.provider_id, entry) for entry in catalog if entry.get("name")]
        logger.info("provider_tools_discovered", provider=client.provider_id, count=len(discovered))
        return discovered

    def _register_tool(self, provider_id: str, entry: Mapping[str, Any]) -> DiscoveredTool:
        tool_name = str(entry["name"])
        key = tool_name
        if key in self._tools and self._tools[key].provider_id != provider_id:
            key = f"{provider_id}:{tool_name}"
        tool = DiscoveredTool(
            name=key,
            tool_name=tool_name,
            description=str(entry.get("description") or ""),
            input_schema=dict(entry.get("inputSchema") or entry.get("input_schema") or {}),
            provider_id=provider_id,
            safe=self._safety.is_safe(tool_name),
        )
        self._tools[key] = tool
        if not tool.safe:
            logger.info("tool_flagged_unsafe", tool=key, provider=provider_id)
        return tool

    def available_tools(self, permitted: Iterable[str] | None = None) -> list[DiscoveredTool]:
        """Safe catalog entries, optionally limited to permitted (alias-resolved) names."""
        allowed: set[str] | None = None
        if permitted is not None:
            allowed = {canonical_tool_name(name) for name in permitted}
            if not allowed:
                allowed = None
        tools = [tool for tool in self._tools.values() if tool.safe]
        if allowed is not None:
            tools = [tool for tool in tools if tool.name in allowed or tool.tool_name in allowed]
        return sorted(tools, key=lambda tool: tool.name)

    def resolve(self, name: str, arguments: Mapping[str, Any] | None = None) -> tuple[str, dict[str, Any]]:
        return map_tool_call(name, arguments)

    async def invoke(
        self,
        name: str,
        arguments: Mapping[str, Any] | None = None,
        *,
        breaker: CircuitBreaker | None = None,
    ) -> ToolInvocation:
        """Run one tool call; without a breaker the call is judged on its own."""
        if breaker is None:
            breaker = self.new_breaker()
        canonical, payload = map_tool_call(name, arguments)
        await breaker.before_invocation(canonical)

        tool = self._tools.get(canonical)
        safe = tool.safe if tool is not None else self._safety.is_safe(canonical)
        if not safe:
            metrics.observe_tool_invocation(tool=canonical, provider=None, outcome="refused", latency=0.0)
            logger.warning("tool_refused_unsafe", tool=canonical, requested=name)
            raise ToolUnsafeError(canonical)

        start = time.perf_counter()
        try:
            if tool is not None:
                provider_id = tool.provider_id
                content = await self._call(provider_id, tool.tool_name, payload)
            else:
                provider_id, content = await self._call_with_fallback(canonical, payload)
        except ToolError as exc:
            latency = time.perf_counter() - start
            metrics.observe_tool_invocation(tool=canonical, provider=getattr(exc, "provider_id", None), outcome="failure", latency=latency)
            logger.warning("tool_invocation_failed", tool=canonical, error=str(exc), kind=exc.kind)
            await breaker.record_failure(canonical)
            raise

        latency = time.perf_counter() - start
        await breaker.record_success()
        metrics.observe_tool_invocation(tool=canonical, provider=provider_id, outcome="success", latency=latency)
        return ToolInvocation(
            tool=canonical,
            arguments=payload,
            provider_id=provider_id,
            success=True,
            content=content,
            duration_ms=latency * 1000,
        )

    async def _call(self, provider_id: str, tool_name: str, payload: Mapping[str, Any]) -> str:
        client = self._providers.get(provider_id)
        if client is None:
            raise ToolExecutionError(tool_name, provider_id=provider_id, reason="provider is not connected")
        try:
            return await client.call_tool(tool_name, payload)
        except ToolTimeoutError as exc:
            raise ToolTimeoutError(tool_name, provider_id=provider_id, reason=exc.reason) from exc
        except ProviderProtocolError as exc:
            raise ToolExecutionError(tool_name, provider_id=provider_id, reason=exc.reason) from exc

    async def _call_with_fallback(self, tool: str, payload: Mapping[str, Any]) -> tuple[str, str]:
        cached = self._route_cache.get(tool)
        if cached is not None and cached in self._providers:
            return cached, await self._call(cached, tool, payload)

        candidates = guess_providers(tool, self.provider_ids)
        if not candidates:
            raise ToolNotFoundError(tool)
        last_error: ToolError | None = None
        for provider_id in candidates:
            try:
                content = await self._call(provider_id, tool, payload)
            except ToolExecutionError as exc:
                logger.debug("tool_fallback_candidate_failed", tool=tool, provider=provider_id, error=str(exc))
                last_error = exc
                continue
            self._route_cache[tool] = provider_id
            logger.info("tool_fallback_route_cached", tool=tool, provider=provider_id)
            return provider_id, content
        if last_error is not None and len(candidates) == 1:
            raise last_error
        raise ToolNotFoundError(tool)

    def status(self) -> dict[str, Any]:
        return {
            "providers": self.provider_ids,
            "failed_providers": dict(self._failed_providers),
            "tools": len(self._tools),
            "unsafe_tools": sorted(name for name, tool in self._tools.items() if not tool.safe),
            "cached_routes": dict(self._route_cache),
            "circuit_breaker": {
                "threshold": self._settings.circuit_breaker_threshold,
                "trips": self._breaker_trips,
            },
        }

    async def close(self) -> None:
        for provider_id, client in list(self._providers.items()):
            try:
                await client.close()
            except (ToolError, OSError) as exc:
                logger.warning("provider_close_failed", provider=provider_id, error=str(exc))
        self._providers.clear()
