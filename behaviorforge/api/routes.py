from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from ..core.exceptions import BehaviorForgeError
from ..core.logging import get_logger
from ..dependencies import get_engine, get_runtime
from ..orchestration.engine import BehavioralEngine
from ..runtime import EngineRuntime
from ..schemas.api import AgentSummary, ExecuteRequestBody, ExecuteResponse, SessionResponse

router = APIRouter()
logger = get_logger(name=__name__)

_STATUS_BY_KIND = {
    "spec_not_found": status.HTTP_404_NOT_FOUND,
    "session_not_found": status.HTTP_404_NOT_FOUND,
    "validation_error": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "quality_rejected": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "honesty_rejected": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "session_closed": status.HTTP_409_CONFLICT,
    "session_limit_exceeded": status.HTTP_429_TOO_MANY_REQUESTS,
    "backend_error": status.HTTP_502_BAD_GATEWAY,
    "no_action_produced": status.HTTP_502_BAD_GATEWAY,
    "circuit_breaker_tripped": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _http_error(exc: BehaviorForgeError) -> HTTPException:
    code = _STATUS_BY_KIND.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    return HTTPException(status_code=code, detail=exc.as_dict())


@router.get("/agents", response_model=list[AgentSummary], tags=["agents"])
async def list_agents(runtime: EngineRuntime = Depends(get_runtime)) -> list[AgentSummary]:
    return [
        AgentSummary(
            agent_id=spec.agent_id,
            required_fields=list(spec.required_fields),
            optional_fields=[field.name for field in spec.input_schema if not field.required],
            modes={mode: list(names) for mode, names in spec.tools.items()},
            requires_action=spec.requires_action,
        )
        for spec in runtime.registry
    ]


@router.post("/agents/{agent_id}/execute", response_model=ExecuteResponse, tags=["agents"])
async def execute_agent(
    agent_id: str,
    body: ExecuteRequestBody,
    engine: BehavioralEngine = Depends(get_engine),
) -> ExecuteResponse:
    try:
        result = await engine.execute(
            agent_id,
            body.input_parameters,
            body.execution_context,
            session_id=body.session_id,
        )
    except BehaviorForgeError as exc:
        logger.warning("execute_request_failed", agent=agent_id, kind=exc.kind, error=str(exc))
        raise _http_error(exc) from exc
    return ExecuteResponse(
        agent_id=result.agent_id,
        output_data=result.output_data,
        execution_metadata=result.execution_metadata,
        quality_score=result.quality_score,
    )


@router.get("/sessions/{session_id}", response_model=SessionResponse, tags=["sessions"])
async def get_session(session_id: str, runtime: EngineRuntime = Depends(get_runtime)) -> SessionResponse:
    try:
        session = runtime.sessions.get_session(session_id)
    except BehaviorForgeError as exc:
        raise _http_error(exc) from exc
    return SessionResponse(
        id=session.id,
        agent_id=session.agent_id,
        completed=session.completed,
        total_calls=session.total_calls,
        messages=[turn.model_dump(mode="json") for turn in session.messages],
        created_at=session.created_at.isoformat(),
        updated_at=session.updated_at.isoformat(),
    )


@router.get("/tools", tags=["tools"])
async def tool_status(runtime: EngineRuntime = Depends(get_runtime)) -> dict[str, Any]:
    return {
        **runtime.router.status(),
        "available": [tool.model_dump() for tool in runtime.router.available_tools()],
    }
