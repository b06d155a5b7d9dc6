from __future__ import annotations

import json
from typing import Any, Mapping, Sequence

from ..schemas.agents import AgentSpecification, ExecutionRequest
from ..schemas.tools import DiscoveredTool

__all__ = ["build_system_prompt", "format_user_input", "truncate_content"]

TRUNCATION_MARKER = "\n...[truncated]"


def _render_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, default=str)


def truncate_content(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    return text[: max(0, limit - len(TRUNCATION_MARKER))] + TRUNCATION_MARKER


def build_system_prompt(
    spec: AgentSpecification,
    *,
    mode: str,
    tools: Sequence[DiscoveredTool] = (),
    workspace_root: str | None = None,
) -> str:
    """Compose the system turn from the agent's algorithm description."""
    algorithm = spec.algorithm
    sections: list[str] = []

    template = algorithm.get("system_prompt_template")
    if isinstance(template, str) and template.strip():
        sections.append(template.strip())
    instructions = algorithm.get("system_instructions")
    if isinstance(instructions, str) and instructions.strip():
        sections.append(instructions.strip())
    elif isinstance(instructions, list):
        sections.append("\n".join(f"- {item}" for item in instructions))

    context_lines = ["## EXECUTION CONTEXT", f"- Agent: {spec.agent_id}", f"- Mode: {mode}"]
    if workspace_root:
        context_lines.append(f"- Workspace root: {workspace_root}")
    if tools:
        context_lines.append("- Available tools:")
        context_lines.extend(f"  - {tool.name}: {tool.description or tool.tool_name}" for tool in tools)
    else:
        context_lines.append("- Available tools: none")
    if spec.requires_action:
        context_lines.append("- You must execute tools to complete this task; a reply without tool calls is rejected.")
    sections.append("\n".join(context_lines))

    sections.append("## BEHAVIORAL ALGORITHM\n" + json.dumps(algorithm, indent=2, sort_keys=True, default=str))
    sections.append(
        f"You are the '{spec.agent_id}' agent. Follow the behavioral algorithm above, cite the files "
        "you inspect, and disclose the scope and limits of your analysis."
    )
    return "\n\n".join(sections)


def format_user_input(request: ExecutionRequest) -> str:
    lines = [f"Agent: {request.agent_id}", "", "Input Parameters:"]
    params: Mapping[str, Any] = request.input_parameters
    if params:
        lines.extend(f"- {key}: {_render_value(params[key])}" for key in sorted(params))
    else:
        lines.append("- (none)")
    if request.execution_context:
        lines.extend(["", "Execution Context:"])
        context = request.execution_context
        lines.extend(f"- {key}: {_render_value(context[key])}" for key in sorted(context))
    return "\n".join(lines)
