"""
Engine router for worker pool control and circuit breaker administration.

The engine is a system-level control plane, separate from /jobs:
- start/stop are idempotent
- stop drains in-flight jobs up to the requested timeout
- circuits can be inspected and manually reset
"""

from fastapi import APIRouter, HTTPException

from job_engine.engine.dispatcher import DispatcherState
from job_engine.engine.errors import InvalidOperationError

from ..schemas.engine import (
    CircuitHealth,
    CircuitListResponse,
    CircuitMetricsResponse,
    CircuitResetResponse,
    EngineStartRequest,
    EngineStartResponse,
    EngineStatusResponse,
    EngineStopRequest,
    EngineStopResponse,
)
from .._engine_state import get_engine_service


router = APIRouter()


@router.post("/start", response_model=EngineStartResponse)
def start_engine(request: EngineStartRequest = EngineStartRequest()):
    """
    Start the worker pool and maintenance loop.

    Idempotent: If the engine is already running, returns success with message.
    """
    service = get_engine_service()

    if service.is_running:
        return EngineStartResponse(
            success=True,
            message="Engine is already running",
            recovery_stats=None,
        )

    try:
        recovery_stats = service.start(run_recovery=request.run_recovery)
    except InvalidOperationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to start engine: {str(e)}")

    return EngineStartResponse(
        success=True,
        message="Engine started successfully",
        recovery_stats=recovery_stats if recovery_stats else None,
    )


@router.post("/stop", response_model=EngineStopResponse)
def stop_engine(request: EngineStopRequest = EngineStopRequest()):
    """
    Stop claiming new jobs and wait for in-flight jobs (no preemption).

    Workers still running after the timeout keep their claims and the
    engine cannot be restarted until they finish; calling stop again
    waits for them.
    """
    service = get_engine_service()

    if not service.is_running and service.dispatcher.state == DispatcherState.STOPPED:
        return EngineStopResponse(
            success=True,
            message="Engine is already stopped",
        )

    try:
        drained = service.stop(timeout=request.timeout)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to stop engine: {str(e)}")

    return EngineStopResponse(
        success=True,
        message="Engine stopped successfully" if drained else "Engine stopped with jobs still in flight",
        drained=drained,
    )


@router.get("/status", response_model=EngineStatusResponse)
def get_engine_status():
    """
    Get worker pool, queue, DLQ and circuit health.
    """
    service = get_engine_service()

    try:
        status = service.get_status()
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to get engine status: {str(e)}")

    return EngineStatusResponse(
        is_running=status["is_running"],
        dispatcher_state=status["dispatcher_state"],
        worker_count=status["worker_count"],
        allowed_workers=status["allowed_workers"],
        in_flight=status["in_flight"],
        jobs=status["jobs"],
        dead_letter=status["dead_letter"],
        circuits=CircuitHealth(**status["circuits"]),
        registered_job_types=status["registered_job_types"],
    )


@router.get("/circuits", response_model=CircuitListResponse)
def list_circuits():
    service = get_engine_service()

    metrics = service.get_circuit_metrics()
    return CircuitListResponse(
        circuits=[CircuitMetricsResponse(**m) for m in metrics.values()],
        health=CircuitHealth(**service.breakers.get_health_status()),
    )


@router.post("/circuits/{name}/reset", response_model=CircuitResetResponse)
def reset_circuit(name: str):
    """
    Force a breaker CLOSED and clear its failure window.
    """
    service = get_engine_service()

    if not service.reset_circuit(name):
        raise HTTPException(status_code=404, detail=f"Circuit not found: {name}")

    return CircuitResetResponse(
        name=name,
        success=True,
        state=service.breakers.find(name).get_state().value,
    )
