"""Client connection to one MCP tool provider, backed by the ``mcp`` SDK session."""

from __future__ import annotations

import asyncio
import json
import os
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping

import anyio
from mcp import ClientSession, StdioServerParameters, types
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError
from pydantic import BaseModel

from ..core.config import ProviderSettings
from ..core.logging import get_logger
from .exceptions import ProviderProtocolError, ToolExecutionError, ToolTimeoutError

__all__ = ["ProviderConnection", "flatten_tool_content", "resolve_provider_env"]

logger = get_logger(name=__name__)

# The SDK reports an expired read timeout as an McpError with this code.
REQUEST_TIMEOUT_CODE = 408

SessionContext = AbstractAsyncContextManager[ClientSession]


def resolve_provider_env(overrides: Mapping[str, str]) -> dict[str, str]:
    """Merge provider env into the current environment, expanding ``${VAR}`` references."""
    env = os.environ.copy()
    for key, value in overrides.items():
        if value.startswith("${") and value.endswith("}"):
            env[key] = os.environ.get(value[2:-1], "")
        else:
            env[key] = value
    return env


def flatten_tool_content(result: Any) -> str:
    """Render a ``tools/call`` result as text."""
    if result is None:
        return ""
    if isinstance(result, str):
        return result
    if isinstance(result, BaseModel):
        result = result.model_dump(mode="json", exclude_none=True)
    if isinstance(result, Mapping):
        content = result.get("content")
        if isinstance(content, list) and content:
            parts: list[str] = []
            for item in content:
                if isinstance(item, Mapping) and item.get("type") == "text":
                    parts.append(str(item.get("text", "")))
                else:
                    parts.append(json.dumps(item, sort_keys=True, default=str))
            return "\n".join(parts)
        if result.get("structuredContent") is not None:
            return json.dumps(result["structuredContent"], sort_keys=True, default=str)
        if isinstance(content, list):
            return ""
    return json.dumps(result, sort_keys=True, default=str)


@asynccontextmanager
async def stdio_session(
    params: StdioServerParameters,
    *,
    read_timeout: timedelta,
    client_info: types.Implementation,
) -> AsyncIterator[ClientSession]:
    """Start a provider process and yield its initialized client session."""
    async with stdio_client(params) as (read_stream, write_stream):
        async with ClientSession(
            read_stream,
            write_stream,
            read_timeout_seconds=read_timeout,
            client_info=client_info,
        ) as session:
            result = await session.initialize()
            logger.info(
                "provider_initialized",
                command=params.command,
                server=result.serverInfo.name,
                protocol_version=str(result.protocolVersion),
            )
            yield session


class ProviderConnection:
    """One long-lived MCP session shared by every caller of a provider.

    The SDK's transport and session are anyio context managers that must be
    entered and exited by the same task, so an owner task holds them open
    until ``close`` is called. Requests from any task go through the session.
    """

    def __init__(self, provider_id: str, *, request_timeout: float = 30.0) -> None:
        self.provider_id = provider_id
        self._request_timeout = request_timeout
        self._session: ClientSession | None = None
        self._owner: asyncio.Task[None] | None = None
        self._closing = asyncio.Event()
        self._closed = False

    @classmethod
    async def spawn(
        cls,
        provider_id: str,
        settings: ProviderSettings,
        *,
        request_timeout: float = 30.0,
        client_name: str = "behaviorforge",
        client_version: str = "0.1.0",
    ) -> "ProviderConnection":
        params = StdioServerParameters(
            command=settings.command,
            args=list(settings.args),
            env=resolve_provider_env(settings.env),
        )
        logger.info("provider_process_starting", provider=provider_id, command=settings.command)
        context = stdio_session(
            params,
            read_timeout=timedelta(seconds=request_timeout),
            client_info=types.Implementation(name=client_name, version=client_version),
        )
        return await cls.open(provider_id, context, request_timeout=request_timeout)

    @classmethod
    async def open(
        cls,
        provider_id: str,
        context: SessionContext,
        *,
        request_timeout: float = 30.0,
    ) -> "ProviderConnection":
        """Hold ``context`` open on an owner task; it must yield an initialized session."""
        connection = cls(provider_id, request_timeout=request_timeout)
        ready: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        connection._owner = asyncio.create_task(connection._hold(context, ready), name=f"provider-{provider_id}")
        await ready
        return connection

    @property
    def initialized(self) -> bool:
        return self._session is not None

    @property
    def request_timeout(self) -> float:
        return self._request_timeout

    async def list_tools(self) -> list[dict[str, Any]]:
        tools: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            result = await self._request("tools/list", lambda session: session.list_tools(cursor))
            tools.extend(
                {
                    "name": tool.name,
                    "description": tool.description or "",
                    "inputSchema": dict(tool.inputSchema or {}),
                }
                for tool in result.tools
            )
            cursor = result.nextCursor
            if not cursor:
                return tools

    async def call_tool(self, name: str, arguments: Mapping[str, Any]) -> str:
        timeout = timedelta(seconds=self._request_timeout)
        try:
            result = await self._request(
                "tools/call",
                lambda session: session.call_tool(name, dict(arguments), read_timeout_seconds=timeout),
            )
        except ToolTimeoutError as exc:
            raise ToolTimeoutError(name, provider_id=self.provider_id, reason=exc.reason) from exc
        text = flatten_tool_content(result)
        if result.isError:
            raise ToolExecutionError(name, provider_id=self.provider_id, reason=text or "provider reported an error")
        return text

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._closing.set()
        if self._owner is not None:
            await self._owner
        logger.info("provider_closed", provider=self.provider_id)

    async def _request(self, method: str, send: Callable[[ClientSession], Awaitable[Any]]) -> Any:
        session = self._session
        if session is None or self._closed:
            raise ProviderProtocolError(self.provider_id, method, "connection closed")
        try:
            return await send(session)
        except McpError as exc:
            if exc.error.code == REQUEST_TIMEOUT_CODE:
                logger.warning("provider_request_timeout", provider=self.provider_id, method=method)
                raise ToolTimeoutError(
                    method,
                    provider_id=self.provider_id,
                    reason=f"no response within {self._request_timeout}s",
                ) from exc
            raise ProviderProtocolError(self.provider_id, method, exc.error.message, code=exc.error.code) from exc
        except (anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.EndOfStream) as exc:
            raise ProviderProtocolError(self.provider_id, method, "connection closed") from exc

    async def _hold(self, context: SessionContext, ready: asyncio.Future[None]) -> None:
        try:
            async with context as session:
                self._session = session
                ready.set_result(None)
                await self._closing.wait()
        except Exception as exc:
            if not ready.done():
                ready.set_exception(ProviderProtocolError(self.provider_id, "initialize", str(exc) or type(exc).__name__))
            else:
                logger.warning("provider_session_ended", provider=self.provider_id, error=str(exc))
        finally:
            self._session = None
            if not ready.done():
                ready.set_exception(ProviderProtocolError(self.provider_id, "initialize", "connection closed"))
