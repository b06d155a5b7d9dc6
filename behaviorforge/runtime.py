from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator

from .agents.registry import SpecificationRegistry
from .core.config import Settings
from .core.logging import get_logger
from .orchestration.engine import BehavioralEngine
from .services.honesty import HonestyValidator
from .services.llm import ChatBackend, LLMService
from .services.quality import QualityValidator
from .services.refinement import RefinementManager
from .services.sessions import SessionManager
from .tools.router import Connector, ToolRouter

logger = get_logger(name=__name__)


@dataclass(slots=True)
class EngineRuntime:
    """Explicitly owned collaborators of one engine instance."""

    settings: Settings
    registry: SpecificationRegistry
    router: ToolRouter
    sessions: SessionManager
    refinement: RefinementManager
    engine: BehavioralEngine

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        backend: ChatBackend | None = None,
        registry: SpecificationRegistry | None = None,
        connector: Connector | None = None,
    ) -> "EngineRuntime":
        registry = registry or SpecificationRegistry.from_directory(_resolve(settings, settings.registry.spec_dir))
        sessions = SessionManager(
            _resolve(settings, settings.sessions.store_path),
            max_total_calls=settings.sessions.max_total_calls,
            max_refinement_iterations=settings.sessions.max_refinement_iterations,
            fsync_every_write=settings.sessions.fsync_every_write,
        )
        router = ToolRouter(settings.tools, connector=connector)
        refinement = RefinementManager(settings.refinement, sessions=sessions)
        engine = BehavioralEngine(
            registry=registry,
            backend=backend or LLMService.from_settings(settings),
            router=router,
            sessions=sessions,
            settings=settings.engine,
            quality=QualityValidator(settings.quality),
            honesty=HonestyValidator(settings.honesty),
            refinement=refinement,
        )
        return cls(
            settings=settings,
            registry=registry,
            router=router,
            sessions=sessions,
            refinement=refinement,
            engine=engine,
        )

    async def start(self) -> None:
        await self.router.start()
        logger.info(
            "engine_runtime_started",
            agents=len(self.registry),
            providers=self.router.provider_ids,
            policy=self.engine.policy.value,
        )

    async def close(self) -> None:
        await self.router.close()
        logger.info("engine_runtime_stopped")

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["EngineRuntime"]:
        await self.start()
        try:
            yield self
        finally:
            await self.close()


def _resolve(settings: Settings, path: str) -> Path:
    candidate = Path(path)
    if candidate.is_absolute():
        return candidate
    return Path(settings.engine.workspace_root) / candidate
