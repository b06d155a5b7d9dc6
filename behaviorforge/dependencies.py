from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from .orchestration.engine import BehavioralEngine
from .runtime import EngineRuntime


def get_runtime(request: Request) -> EngineRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Engine runtime is not ready")
    return runtime


def get_engine(runtime: EngineRuntime = Depends(get_runtime)) -> BehavioralEngine:
    return runtime.engine
