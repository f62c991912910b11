"""
Engine state management for API integration.

Provides singleton access to the JobEngineService instance.
Initialized during FastAPI lifespan; workers start only on
POST /engine/start unless JOB_ENGINE_AUTOSTART=true.

Usage:
    from ._engine_state import get_engine_service, init_engine_service

    # In lifespan:
    init_engine_service(config, registry)

    # In routers:
    service = get_engine_service()
"""

import importlib
import logging
from typing import Optional

from job_engine.engine.executor import HandlerRegistry
from job_engine.engine.service import EngineConfig, JobEngineService
from job_engine.infra.config import load_config


logger = logging.getLogger(__name__)

# Global engine service instance
_engine_service: Optional[JobEngineService] = None


def load_handler_registry(module_name: Optional[str]) -> HandlerRegistry:
    """
    Build a HandlerRegistry from a module exposing register_handlers(registry).

    With no module the registry is empty and every submission is rejected
    as an invalid job type.
    """
    registry = HandlerRegistry()
    if not module_name:
        logger.warning("No handler module configured; all job types are unregistered")
        return registry

    module = importlib.import_module(module_name)
    register = getattr(module, "register_handlers", None)
    if register is None:
        raise RuntimeError(f"Handler module {module_name} has no register_handlers()")
    register(registry)
    logger.info(
        f"Loaded handlers from {module_name}: "
        f"{[t.value for t in registry.registered_types()]}"
    )
    return registry


def init_engine_service(
    config: Optional[EngineConfig] = None,
    registry: Optional[HandlerRegistry] = None,
) -> JobEngineService:
    """
    Initialize the engine service singleton.

    Idempotent: a second call returns the existing instance.

    Args:
        config: Engine configuration; loaded from the environment when omitted
        registry: Populated handler registry

    Returns:
        Initialized JobEngineService
    """
    global _engine_service

    if _engine_service is not None:
        return _engine_service

    _engine_service = JobEngineService.create(
        config=config or load_config(),
        registry=registry,
    )
    return _engine_service


def get_engine_service() -> JobEngineService:
    """
    Get the engine service singleton.

    Raises:
        RuntimeError: If engine service not initialized
    """
    if _engine_service is None:
        raise RuntimeError(
            "Engine service not initialized. "
            "Ensure init_engine_service() is called during startup."
        )

    return _engine_service


def shutdown_engine_service() -> None:
    """
    Shutdown the engine service.

    Called during FastAPI lifespan shutdown. Drains workers if running.
    """
    global _engine_service

    if _engine_service is not None:
        _engine_service.shutdown()
        _engine_service = None
