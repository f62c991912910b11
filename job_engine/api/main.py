"""
FastAPI application entry point.

Administrative HTTP surface for the job engine: submission, job queries,
dead-letter administration, engine control and metrics.
Optional API key authentication.
"""

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from job_engine import __version__
from job_engine.infra.config import get_api_settings, get_log_settings
from job_engine.infra.logging_config import setup_logging
from .routers import jobs, dead_letter, engine, metrics
from ._engine_state import (
    get_engine_service,
    init_engine_service,
    load_handler_registry,
    shutdown_engine_service,
)
from .dependencies.auth import verify_api_key, API_AUTH_ENABLED


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup: build the engine service (handlers from JOB_ENGINE_HANDLERS_MODULE)
    and start workers only when JOB_ENGINE_AUTOSTART=true.
    Shutdown: drain workers and release breaker pools.
    """
    settings = get_api_settings()
    service = init_engine_service(
        registry=load_handler_registry(settings["handlers_module"]),
    )
    if settings["autostart"] and not service.is_running:
        service.start()

    yield

    shutdown_engine_service()


tags_metadata = [
    {
        "name": "jobs",
        "description": "Idempotent job submission, queries and cancellation",
    },
    {
        "name": "dead-letter",
        "description": "Quarantined jobs - list, retry, purge and batch recovery",
    },
    {
        "name": "engine",
        "description": "Worker pool control and circuit breaker administration",
    },
    {
        "name": "metrics",
        "description": "Counters, gauges, histograms and execution statistics",
    },
]

app = FastAPI(
    title="Job Engine API",
    lifespan=lifespan,
    description="""
## Job Engine API

Durable asynchronous job processing with per-type retry, per-dependency
circuit breakers and a dead-letter queue.

### Authentication
When `API_AUTH_ENABLED=true`, all endpoints except `/health` require
an `X-API-Key` header matching the `API_KEY` environment variable.

### Usage
```bash
# Start server
JOB_ENGINE_HANDLERS_MODULE=myapp.handlers uvicorn job_engine.api.main:app --port 8000

# Start workers
curl -X POST http://localhost:8000/engine/start

# Submit a webhook job (idempotent by singleton_key)
curl -X POST http://localhost:8000/jobs \\
  -H "Content-Type: application/json" \\
  -d '{"job_type": "webhook-processing", "payload": {"id": "evt_1"}, "singleton_key": "evt_1"}'
```
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=tags_metadata,
)


# Health check - NO authentication (operational endpoint)
@app.get("/health")
async def health_check():
    """Health check endpoint. Not authenticated."""
    try:
        service = get_engine_service()
    except RuntimeError:
        return {"status": "starting", "version": __version__}

    circuits = service.breakers.get_health_status()
    return {
        "status": "ok" if circuits["healthy"] else "degraded",
        "version": __version__,
        "engine_running": service.is_running,
        "open_circuits": circuits["open_circuits"],
    }


# Include routers WITH authentication dependency (when enabled)
auth_dependency = [Depends(verify_api_key)] if API_AUTH_ENABLED else []

app.include_router(
    jobs.router, prefix="/jobs", tags=["jobs"], dependencies=auth_dependency
)
app.include_router(
    dead_letter.router, prefix="/dead-letter", tags=["dead-letter"], dependencies=auth_dependency
)
app.include_router(
    engine.router, prefix="/engine", tags=["engine"], dependencies=auth_dependency
)
app.include_router(
    metrics.router, prefix="/metrics", tags=["metrics"], dependencies=auth_dependency
)


def run() -> None:
    """Console entry point: configure logging and serve the app."""
    import uvicorn

    log_level, log_dir = get_log_settings()
    setup_logging(log_level=log_level, log_dir=log_dir)
    uvicorn.run(app, host="127.0.0.1", port=8000)


if __name__ == "__main__":
    run()
