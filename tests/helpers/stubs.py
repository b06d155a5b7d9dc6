from __future__ import annotations

import asyncio
import json
from collections import deque
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Sequence

from behaviorforge.agents.registry import SpecificationRegistry
from behaviorforge.core.config import Settings
from behaviorforge.runtime import EngineRuntime
from behaviorforge.schemas.sessions import Turn
from behaviorforge.schemas.tools import DiscoveredTool
from behaviorforge.services.llm import BackendResponse, BackendToolCall
from behaviorforge.tools.exceptions import ToolExecutionError

GOOD_CONTENT = json.dumps(
    {
        "result": {
            "files_reviewed": [
                "src/app/main.py",
                "src/app/config.py",
                "tests/test_main.py",
                "docs/setup.md",
                "README.md",
            ],
            "status": "reviewed",
        },
        "analysis": (
            "Analyzed available files within the analysis scope; findings are limited to scope and "
            "based on available information. Verified the handler in src/app/main.py, confirmed the "
            "settings in src/app/config.py, observed and identified two gaps."
        ),
        "recommendations": [
            "Create a settings loader in src/app/config.py",
            "Modify the request handler in src/app/main.py",
            "Test the endpoint in tests/test_main.py",
        ],
    }
)

WEAK_CONTENT = "Done."

SPECULATIVE_CONTENT = GOOD_CONTENT.replace("observed and identified two gaps", "probably fine, assuming defaults")


def backend_response(content: str = GOOD_CONTENT, *tool_calls: BackendToolCall) -> BackendResponse:
    return BackendResponse(
        content=content,
        tool_calls=list(tool_calls),
        model="stub-model",
        response_id="resp-1",
        prompt_tokens=12,
        completion_tokens=8,
        total_tokens=20,
    )


def tool_call(name: str, **arguments: Any) -> BackendToolCall:
    return BackendToolCall(name=name, arguments=arguments, id=f"call-{name}")


def _agent_of(turns: Sequence[Turn]) -> str | None:
    for turn in turns:
        if turn.role == "user" and turn.content.startswith("Agent: "):
            return turn.content.splitlines()[0].removeprefix("Agent: ").strip()
    return None


class StubBackend:
    """Scripted chat backend.

    Responses are consumed in order, per agent when ``by_agent`` names the
    agent; the last scripted response repeats once the queue is drained.
    """

    name = "stub"

    def __init__(
        self,
        responses: Iterable[BackendResponse] = (),
        *,
        by_agent: Mapping[str, Iterable[BackendResponse]] | None = None,
        delay: float = 0.0,
        error: BaseException | None = None,
    ) -> None:
        self._queue: deque[BackendResponse] = deque(responses)
        self._by_agent = {agent: deque(items) for agent, items in (by_agent or {}).items()}
        self.delay = delay
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def complete(self, turns: Sequence[Turn], *, tools: Sequence[DiscoveredTool] = ()) -> BackendResponse:
        agent = _agent_of(turns)
        self.calls.append({"agent": agent, "turns": list(turns), "tools": [tool.name for tool in tools]})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        queue = self._by_agent[agent] if agent in self._by_agent else self._queue
        if not queue:
            raise AssertionError(f"no scripted response for agent {agent!r}")
        return queue.popleft() if len(queue) > 1 else queue[0]

    def calls_for(self, agent: str) -> list[dict[str, Any]]:
        return [call for call in self.calls if call["agent"] == agent]


class FakeProviderClient:
    """In-process tool provider with scripted results.

    ``results`` maps a tool name (or ``"*"``) to a string, a callable taking
    the arguments, or an exception instance to raise.
    """

    def __init__(
        self,
        provider_id: str,
        *,
        tools: Iterable[str | Mapping[str, Any]] = (),
        results: Mapping[str, Any] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.provider_id = provider_id
        self._tools = [
            dict(tool)
            if isinstance(tool, Mapping)
            else {"name": tool, "description": f"{tool} tool", "inputSchema": {"type": "object"}}
            for tool in tools
        ]
        self._results = dict(results or {})
        self.delay = delay
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.closed = False

    async def list_tools(self) -> list[dict[str, Any]]:
        return [dict(tool) for tool in self._tools]

    async def call_tool(self, name: str, arguments: Mapping[str, Any]) -> str:
        self.calls.append((name, dict(arguments)))
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self._results.get(name, self._results.get("*"))
        if outcome is None:
            raise ToolExecutionError(name, provider_id=self.provider_id, reason="unknown tool")
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return str(outcome(arguments))
        return str(outcome)

    async def close(self) -> None:
        self.closed = True


AGENT_DESCRIPTORS: list[dict[str, Any]] = [
    {
        "agent_id": "security_reviewer",
        "input_schema": {
            "analysis_scope": {"type": "enum", "enum": ["full", "security", "quick"]},
            "target": {"type": "string", "required": False},
        },
        "algorithm": {
            "requires_action": True,
            "steps": [{"action": "read_file"}, {"action": "search_files"}],
            "requirements": ["Cite every inspected file"],
        },
        "tools": {"default": ["codebase", "search", "list_dir"], "audit": ["codebase"]},
    },
    {
        "agent_id": "code_implementer",
        "input_schema": [
            {"name": "task", "type": "string"},
            {"name": "dry_run", "type": "boolean", "required": False},
            {"name": "max_files", "type": "integer", "required": False},
        ],
        "algorithm": {"requires_action": False},
    },
    {
        "agent_id": "documentation_writer",
        "input_schema": {"topic": "string"},
        "algorithm": {"requires_action": False},
    },
    {
        "agent_id": "project_orchestrator",
        "input_schema": [{"name": "project_goal", "type": "string"}],
        "algorithm": {"requires_action": False},
    },
]


def build_registry(descriptors: Iterable[Mapping[str, Any]] | None = None) -> SpecificationRegistry:
    return SpecificationRegistry.from_descriptors(descriptors if descriptors is not None else AGENT_DESCRIPTORS)


def build_settings(tmp_path: Path, **sections: Mapping[str, Any]) -> Settings:
    payload: dict[str, Any] = {
        "environment": "test",
        "engine": {"workspace_root": str(tmp_path), "request_timeout_seconds": 5.0},
        "sessions": {"store_path": str(tmp_path / "sessions")},
    }
    for section, values in sections.items():
        payload.setdefault(section, {}).update(values)
    return Settings(**payload)


async def build_runtime(
    tmp_path: Path,
    backend: StubBackend,
    *,
    providers: Iterable[FakeProviderClient] = (),
    registry: SpecificationRegistry | None = None,
    **sections: Mapping[str, Any],
) -> EngineRuntime:
    runtime = EngineRuntime.build(
        build_settings(tmp_path, **sections),
        backend=backend,
        registry=registry or build_registry(),
    )
    for provider in providers:
        await runtime.router.add_provider(provider)
    return runtime


def filesystem_provider(**results: Any) -> FakeProviderClient:
    defaults: dict[str, Any] = {
        "read_file": lambda args: f"contents of {args.get('path')}",
        "search_files": "src/app/main.py:12: match",
        "list_directory": "src\ntests",
    }
    defaults.update(results)
    return FakeProviderClient(
        "filesystem",
        tools=["read_file", "search_files", "list_directory", "write_file"],
        results=defaults,
    )


def noop(*_: Any, **__: Any) -> None:
    return None


Recorder = Callable[..., None]


def recorder(into: list[dict[str, Any]]) -> Recorder:
    def _record(**kwargs: Any) -> None:
        into.append(kwargs)

    return _record
