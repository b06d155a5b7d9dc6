from __future__ import annotations

import json
import re
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Iterator, Mapping

from pydantic import ValidationError

from ..core.exceptions import SpecNotFoundError
from ..core.logging import get_logger
from ..schemas.agents import AgentSpecification

__all__ = ["SpecificationRegistry"]

logger = get_logger(name=__name__)

_MEMBER_PATTERN = re.compile(r"\W+")


def _member_name(agent_id: str) -> str:
    name = _MEMBER_PATTERN.sub("_", agent_id).strip("_").upper()
    return name if name and not name[0].isdigit() else f"AGENT_{name}"


class SpecificationRegistry:
    """Read-only set of agent specifications resolved once at startup.

    Agent ids are also exposed as members of a per-registry ``AgentType``
    enum so call sites can hold a typed handle instead of a bare string.
    """

    def __init__(self, specifications: Iterable[AgentSpecification]) -> None:
        members: dict[str, str] = {}
        specs: dict[str, AgentSpecification] = {}
        for spec in specifications:
            if spec.agent_id in specs:
                raise ValueError(f"Duplicate agent specification '{spec.agent_id}'")
            member = _member_name(spec.agent_id)
            while member in members:
                member = f"{member}_"
            members[member] = spec.agent_id
            specs[spec.agent_id] = spec
        self.AgentType = Enum("AgentType", members, type=str)  # type: ignore[misc]
        self._specs: Mapping[str, AgentSpecification] = MappingProxyType(specs)

    @classmethod
    def from_descriptors(cls, descriptors: Iterable[Mapping[str, Any]]) -> "SpecificationRegistry":
        return cls(AgentSpecification.from_descriptor(descriptor) for descriptor in descriptors)

    @classmethod
    def from_directory(cls, directory: str | Path) -> "SpecificationRegistry":
        """Load every ``*.json`` descriptor (one object or a list of objects per file)."""
        root = Path(directory)
        if not root.is_dir():
            logger.warning("agent_spec_dir_missing", path=str(root))
            return cls(())
        specs: list[AgentSpecification] = []
        for path in sorted(root.glob("*.json")):
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
                entries = payload if isinstance(payload, list) else [payload]
                specs.extend(AgentSpecification.from_descriptor(entry) for entry in entries)
            except (OSError, json.JSONDecodeError, KeyError, ValueError, ValidationError) as exc:
                raise ValueError(f"Invalid agent specification file {path}: {exc}") from exc
        registry = cls(specs)
        logger.info("agent_specs_loaded", count=len(registry), path=str(root))
        return registry

    def get(self, agent: str | Enum) -> AgentSpecification:
        agent_id = agent.value if isinstance(agent, Enum) else agent
        try:
            return self._specs[agent_id]
        except KeyError:
            raise SpecNotFoundError(str(agent_id)) from None

    def agent_type(self, agent_id: str) -> Enum:
        try:
            return self.AgentType(agent_id)
        except ValueError:
            raise SpecNotFoundError(agent_id) from None

    @property
    def agent_ids(self) -> tuple[str, ...]:
        return tuple(self._specs)

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._specs

    def __iter__(self) -> Iterator[AgentSpecification]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)
