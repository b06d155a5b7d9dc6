from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from .api.routes import router as api_router
from .core.config import Settings, get_settings
from .core.logging import configure_logging, get_logger
from .runtime import EngineRuntime

settings = get_settings()
configure_logging(settings.observability.log_level)
logger = get_logger(name=__name__)


def create_app(runtime: EngineRuntime | None = None, *, app_settings: Settings | None = None) -> FastAPI:
    """Build the HTTP surface; a prebuilt runtime is served as is, otherwise one is built on startup."""
    active_settings = app_settings or (runtime.settings if runtime is not None else settings)

    @asynccontextmanager
    async def app_lifespan(app: FastAPI):
        current = getattr(app.state, "runtime", None)
        if current is None:
            current = EngineRuntime.build(active_settings)
            app.state.runtime = current
        async with current.lifecycle():
            yield

    app = FastAPI(title="BehaviorForge", version="0.1.0", lifespan=app_lifespan)
    if runtime is not None:
        app.state.runtime = runtime
    app.include_router(api_router, prefix=active_settings.api_v1_prefix)

    @app.get("/", tags=["health"])
    async def root() -> dict[str, str]:
        return {"message": "BehaviorForge engine running"}

    if active_settings.observability.prometheus_enabled:

        @app.get("/metrics", tags=["observability"])
        async def metrics() -> Response:
            return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
