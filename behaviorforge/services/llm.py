from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, ClassVar, Protocol, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from ..core.config import Settings
from ..core.logging import get_logger
from ..schemas.sessions import Turn
from ..schemas.tools import DiscoveredTool

try:  # pragma: no cover - optional heavy dependency
    from langchain_ollama import ChatOllama
except ModuleNotFoundError:  # pragma: no cover
    ChatOllama = None  # type: ignore[misc, assignment]

__all__ = ["BackendResponse", "BackendToolCall", "ChatBackend", "LLMService", "messages_from_turns"]

logger = get_logger(name=__name__)


def _build_base_url(host: str, port: int) -> str:
    if ":" in host.rsplit("/", maxsplit=1)[-1]:
        return host.rstrip("/")
    return f"{host.rstrip('/')}:{port}"


@dataclass(slots=True)
class BackendToolCall:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    id: str = ""


@dataclass(slots=True)
class BackendResponse:
    content: str
    tool_calls: list[BackendToolCall] = field(default_factory=list)
    model: str = ""
    response_id: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.content.strip() and not self.tool_calls


class ChatBackend(Protocol):
    """Anything that can answer one conversation round trip."""

    name: str

    async def complete(self, turns: Sequence[Turn], *, tools: Sequence[DiscoveredTool] = ()) -> BackendResponse: ...


def messages_from_turns(turns: Sequence[Turn]) -> list[BaseMessage]:
    messages: list[BaseMessage] = []
    for turn in turns:
        if turn.role == "system":
            messages.append(SystemMessage(content=turn.content))
        elif turn.role == "assistant":
            messages.append(AIMessage(content=turn.content))
        elif turn.role == "tool":
            # Sent as plain user text; turns carry no tool-call ids.
            messages.append(HumanMessage(content=f"Tool result:\n{turn.content}"))
        else:
            messages.append(HumanMessage(content=turn.content))
    return messages


def _message_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict) and item.get("type") == "text":
                parts.append(str(item.get("text", "")))
        return "".join(parts)
    return str(content or "")


def _tool_calls(message: Any) -> list[BackendToolCall]:
    calls: list[BackendToolCall] = []
    for raw in getattr(message, "tool_calls", None) or []:
        name = raw.get("name") if isinstance(raw, dict) else getattr(raw, "name", None)
        if not name:
            continue
        args = raw.get("args") if isinstance(raw, dict) else getattr(raw, "args", {})
        if isinstance(args, str):
            try:
                args = json.loads(args)
            except json.JSONDecodeError:
                args = {"input": args}
        call_id = (raw.get("id") if isinstance(raw, dict) else getattr(raw, "id", None)) or uuid.uuid4().hex
        calls.append(BackendToolCall(name=str(name), arguments=dict(args or {}), id=str(call_id)))
    return calls


@dataclass
class LLMService:
    """LangChain chat-model backend; Ollama by default."""

    settings: Settings
    _client: Any
    model: str
    name: str = "ollama"
    _client_cache: ClassVar[dict[str, Any]] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        model: str | None = None,
        client: Any | None = None,
    ) -> "LLMService":
        model_name = model or settings.backend.model
        if client is None:
            cache_key = f"{settings.backend.host}:{settings.backend.port}:{model_name}"
            cached = cls._client_cache.get(cache_key)
            if cached is None:
                if ChatOllama is None:  # pragma: no cover - handled in runtime logs
                    raise RuntimeError("langchain_ollama is not installed")
                base_url = _build_base_url(settings.backend.host, settings.backend.port)
                cached = ChatOllama(
                    model=model_name,
                    base_url=base_url,
                    temperature=settings.backend.temperature,
                    num_predict=settings.backend.max_tokens,
                )
                cls._client_cache[cache_key] = cached
            client = cached
        return cls(settings=settings, _client=client, model=model_name, name=settings.backend.provider)

    async def complete(self, turns: Sequence[Turn], *, tools: Sequence[DiscoveredTool] = ()) -> BackendResponse:
        client = self._client
        if tools and hasattr(client, "bind_tools"):
            client = client.bind_tools([tool.as_function_spec() for tool in tools])
        message = await client.ainvoke(messages_from_turns(turns))

        usage = getattr(message, "usage_metadata", None) or {}
        prompt_tokens = int(usage.get("input_tokens", 0) or 0)
        completion_tokens = int(usage.get("output_tokens", 0) or 0)
        response = BackendResponse(
            content=_message_text(message),
            tool_calls=_tool_calls(message),
            model=self.model,
            response_id=str(getattr(message, "id", None) or uuid.uuid4().hex),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=int(usage.get("total_tokens", prompt_tokens + completion_tokens) or 0),
        )
        logger.debug(
            "backend_round_trip",
            model=self.model,
            tool_calls=len(response.tool_calls),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        )
        return response
