"""
Shared fixtures: auth reset for every test, plus an engine service and
TestClient for the HTTP API tests.
"""

import importlib

import pytest


@pytest.fixture(autouse=True)
def reset_auth_module(monkeypatch):
    """Run each test with API auth off unless the test turns it on."""
    monkeypatch.setenv("API_AUTH_ENABLED", "false")
    monkeypatch.delenv("API_KEY", raising=False)
    yield
    monkeypatch.undo()
    import job_engine.api.dependencies.auth as auth_module
    importlib.reload(auth_module)


# =============================================================================
# API Fixtures
# =============================================================================


class RecordingWebhookHandler:
    """Webhook handler that records calls and raises `error` when set."""

    def __init__(self):
        self.calls = []
        self.error = None

    def __call__(self, payload, tenant_id):
        self.calls.append((payload, tenant_id))
        if self.error is not None:
            raise self.error
        return {"delivered": True}


@pytest.fixture
def api_handler():
    return RecordingWebhookHandler()


@pytest.fixture
def api_service(tmp_path, api_handler, monkeypatch):
    """
    Engine service singleton on a temporary database.

    Only webhook-processing is registered. Workers are not started, so tests
    drive dispatch through service.dispatcher.dispatch_one().
    """
    from job_engine.api._engine_state import init_engine_service, shutdown_engine_service
    from job_engine.engine import (
        CircuitBreakerConfig,
        DispatcherConfig,
        EngineConfig,
        HandlerRegistry,
        JobType,
    )

    monkeypatch.delenv("JOB_ENGINE_AUTOSTART", raising=False)
    monkeypatch.delenv("JOB_ENGINE_HANDLERS_MODULE", raising=False)
    shutdown_engine_service()

    registry = HandlerRegistry()
    registry.register(JobType.WEBHOOK_PROCESSING, api_handler, dependency="payments-api")
    config = EngineConfig(
        db_path=str(tmp_path / "api.db"),
        max_payload_bytes=1024,
        maintenance_interval_seconds=3600,
        shutdown_timeout_seconds=5,
        dispatcher=DispatcherConfig(worker_count=2, poll_interval_seconds=0.05),
        circuit_breaker=CircuitBreakerConfig(timeout_ms=None),
    )
    service = init_engine_service(config, registry)
    yield service
    shutdown_engine_service()


@pytest.fixture
def client(api_service):
    """TestClient with a freshly imported app (auth disabled)."""
    from fastapi.testclient import TestClient
    import job_engine.api.dependencies.auth as auth_module
    import job_engine.api.main as main_module

    importlib.reload(auth_module)
    importlib.reload(main_module)

    with TestClient(main_module.app) as test_client:
        yield test_client
