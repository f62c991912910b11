"""
Engine configuration loader.

Static configuration, loaded once at startup:
1. .env file (python-dotenv), without overriding variables already set
2. JOB_ENGINE_* environment variables for scalars
3. Optional JSON file (JOB_ENGINE_CONFIG_FILE) for per-job-type retry
   profiles and per-dependency circuit breaker settings

Invalid values log a warning and fall back to defaults.

Environment Variables:
- JOB_ENGINE_DB_PATH: SQLite file (default: data/job_engine.db)
- JOB_ENGINE_WORKER_COUNT: Worker threads (default: 4)
- JOB_ENGINE_POLL_INTERVAL_SECONDS: Idle poll interval (default: 1.0)
- JOB_ENGINE_CLAIM_TIMEOUT_SECONDS: Age of a stale active claim (default: 300)
- JOB_ENGINE_MAX_PAYLOAD_BYTES: Payload ceiling (default: 262144)
- JOB_ENGINE_MAINTENANCE_INTERVAL_SECONDS: Maintenance pass interval (default: 60)
- JOB_ENGINE_SHUTDOWN_TIMEOUT_SECONDS: Drain timeout on stop (default: 30)
- JOB_ENGINE_RECLAIM_ALL_ON_STARTUP: Reclaim every active claim at start (default: true)
- JOB_ENGINE_DLQ_ENABLED / _DLQ_MAX_RETRIES / _DLQ_RETENTION_DAYS /
  _DLQ_BATCH_SIZE / _DLQ_AUTO_RECOVERY / _DLQ_AUTO_RECOVERY_INTERVAL_SECONDS
- JOB_ENGINE_METRICS_ENABLED / _METRICS_PERSIST / _METRICS_RETENTION_DAYS
- JOB_ENGINE_METRICS_ALERTS_ENABLED / _ALERT_DURATION_MS / _ALERT_QUEUE_DEPTH
- JOB_ENGINE_MEMORY_PRESSURE_ENABLED / _MEMORY_THRESHOLD_MB /
  _MEMORY_CHECK_INTERVAL_SECONDS
- JOB_ENGINE_CONFIG_FILE: Path to the JSON file
- JOB_ENGINE_LOG_LEVEL / JOB_ENGINE_LOG_DIR: Logging (see logging_config)
- JOB_ENGINE_HANDLERS_MODULE: Module with register_handlers(registry) for the API
- JOB_ENGINE_AUTOSTART: Start workers when the API boots (default: false)

JSON file format:
    {
      "retry": {
        "default": {"max_attempts": 3, "base_delay_ms": 1000, ...},
        "reminder-processing": {"max_attempts": 2}
      },
      "circuit_breakers": {
        "default": {"failure_threshold": 5, "recovery_timeout_ms": 60000},
        "payments-api": {"failure_threshold": 3}
      }
    }
"""

import json
import logging
import os
from dataclasses import fields, replace
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from job_engine.engine.circuit_breaker import CircuitBreakerConfig
from job_engine.engine.dead_letter import DeadLetterConfig
from job_engine.engine.dispatcher import DispatcherConfig
from job_engine.engine.entities import JobType
from job_engine.engine.metrics import MetricsConfig
from job_engine.engine.retry_policy import RetryConfig, RetryProfile, default_profiles
from job_engine.engine.service import EngineConfig


logger = logging.getLogger(__name__)

ENV_PREFIX = "JOB_ENGINE_"


# =============================================================================
# Environment helpers
# =============================================================================

def _get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    val = os.getenv(ENV_PREFIX + key)
    if val is None or val == "":
        return default
    val = val.lower()
    if val in ("true", "1", "yes", "on"):
        return True
    if val in ("false", "0", "no", "off"):
        return False
    logger.warning(f"[Config] Invalid boolean for {ENV_PREFIX}{key}: {val}, using default: {default}")
    return default


def _get_env_int(key: str, default: int, minimum: Optional[int] = None) -> int:
    """Get integer value from environment variable."""
    val = os.getenv(ENV_PREFIX + key)
    if val is None or val == "":
        return default
    try:
        parsed = int(val)
    except ValueError:
        logger.warning(f"[Config] Invalid integer for {ENV_PREFIX}{key}: {val}, using default: {default}")
        return default
    if minimum is not None and parsed < minimum:
        logger.warning(f"[Config] {ENV_PREFIX}{key}={parsed} below minimum {minimum}, using default: {default}")
        return default
    return parsed


def _get_env_float(key: str, default: float) -> float:
    """Get positive float value from environment variable."""
    val = os.getenv(ENV_PREFIX + key)
    if val is None or val == "":
        return default
    try:
        parsed = float(val)
    except ValueError:
        logger.warning(f"[Config] Invalid number for {ENV_PREFIX}{key}: {val}, using default: {default}")
        return default
    if parsed <= 0:
        logger.warning(f"[Config] {ENV_PREFIX}{key} must be positive, using default: {default}")
        return default
    return parsed


def get_log_settings() -> tuple[str, Optional[str]]:
    """(log_level, log_dir) from the environment; empty log dir disables file logging."""
    level = os.getenv(ENV_PREFIX + "LOG_LEVEL", "INFO")
    log_dir = os.getenv(ENV_PREFIX + "LOG_DIR", "logs")
    return level, (log_dir or None)


def get_api_settings() -> dict:
    """Handler module and autostart flag used by the HTTP app."""
    return {
        "handlers_module": os.getenv(ENV_PREFIX + "HANDLERS_MODULE") or None,
        "autostart": _get_env_bool("AUTOSTART", False),
    }


# =============================================================================
# JSON file sections
# =============================================================================

def _build(cls, base, overrides: dict, label: str):
    """Apply known keys of overrides onto a frozen/plain dataclass instance."""
    if not isinstance(overrides, dict):
        logger.warning(f"[Config] {label} must be an object, ignoring")
        return base
    known = {f.name for f in fields(cls)}
    unknown = set(overrides) - known
    if unknown:
        logger.warning(f"[Config] Unknown keys in {label}: {sorted(unknown)}")
    try:
        return replace(base, **{k: v for k, v in overrides.items() if k in known})
    except (TypeError, ValueError) as e:
        logger.warning(f"[Config] Invalid {label}: {e}, using defaults")
        return base


def _load_retry(section: dict) -> RetryConfig:
    config = RetryConfig()
    if not isinstance(section, dict):
        logger.warning("[Config] 'retry' must be an object, ignoring")
        return config

    default = _build(RetryProfile, config.default, section.get("default", {}), "retry.default")
    profiles = default_profiles()
    for key, overrides in section.items():
        if key == "default":
            continue
        try:
            job_type = JobType(key)
        except ValueError:
            logger.warning(f"[Config] Unknown job type in retry config: {key}")
            continue
        profiles[job_type] = _build(
            RetryProfile, profiles.get(job_type, default), overrides, f"retry.{key}"
        )
    return RetryConfig(default=default, profiles=profiles)


def _load_breakers(section: dict) -> tuple[CircuitBreakerConfig, dict]:
    default = CircuitBreakerConfig()
    if not isinstance(section, dict):
        logger.warning("[Config] 'circuit_breakers' must be an object, ignoring")
        return default, {}

    default = _build(
        CircuitBreakerConfig, default, section.get("default", {}), "circuit_breakers.default"
    )
    per_dependency = {
        name: _build(CircuitBreakerConfig, default, overrides, f"circuit_breakers.{name}")
        for name, overrides in section.items()
        if name != "default"
    }
    return default, per_dependency


def _read_config_file(path: str) -> dict:
    file_path = Path(path)
    if not file_path.exists():
        logger.warning(f"[Config] Config file not found: {path}, using defaults")
        return {}
    try:
        with open(file_path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"[Config] Could not read config file {path}: {e}, using defaults")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"[Config] Config file {path} must contain an object, using defaults")
        return {}
    return data


# =============================================================================
# Entry point
# =============================================================================

def load_config(env_file: Optional[str] = None) -> EngineConfig:
    """
    Build EngineConfig from .env, environment and the optional JSON file.

    Args:
        env_file: Explicit .env path; defaults to python-dotenv's search

    Returns:
        EngineConfig
    """
    load_dotenv(env_file, override=False)

    memory_threshold_mb = _get_env_int("MEMORY_THRESHOLD_MB", 512, minimum=1)

    dispatcher = DispatcherConfig(
        worker_count=_get_env_int("WORKER_COUNT", 4, minimum=1),
        poll_interval_seconds=_get_env_float("POLL_INTERVAL_SECONDS", 1.0),
        memory_pressure_enabled=_get_env_bool("MEMORY_PRESSURE_ENABLED", True),
        memory_threshold_mb=memory_threshold_mb,
        memory_check_interval_seconds=_get_env_float("MEMORY_CHECK_INTERVAL_SECONDS", 30.0),
    )

    dead_letter = DeadLetterConfig(
        enabled=_get_env_bool("DLQ_ENABLED", True),
        max_retries=_get_env_int("DLQ_MAX_RETRIES", 5, minimum=0),
        retention_days=_get_env_int("DLQ_RETENTION_DAYS", 30, minimum=1),
        batch_size=_get_env_int("DLQ_BATCH_SIZE", 10, minimum=1),
        auto_recovery=_get_env_bool("DLQ_AUTO_RECOVERY", True),
        auto_recovery_interval_seconds=_get_env_int(
            "DLQ_AUTO_RECOVERY_INTERVAL_SECONDS", 300, minimum=1
        ),
    )

    metrics = MetricsConfig(
        enabled=_get_env_bool("METRICS_ENABLED", True),
        persist=_get_env_bool("METRICS_PERSIST", True),
        retention_days=_get_env_int("METRICS_RETENTION_DAYS", 90, minimum=1),
        memory_threshold_mb=memory_threshold_mb,
        alerts_enabled=_get_env_bool("METRICS_ALERTS_ENABLED", True),
        alert_duration_ms=_get_env_int("ALERT_DURATION_MS", 30000, minimum=1),
        alert_queue_depth=_get_env_int("ALERT_QUEUE_DEPTH", 100, minimum=1),
    )

    config = EngineConfig(
        db_path=os.getenv(ENV_PREFIX + "DB_PATH") or "data/job_engine.db",
        max_payload_bytes=_get_env_int("MAX_PAYLOAD_BYTES", 256 * 1024, minimum=1),
        claim_timeout_seconds=_get_env_int("CLAIM_TIMEOUT_SECONDS", 300, minimum=1),
        maintenance_interval_seconds=_get_env_float("MAINTENANCE_INTERVAL_SECONDS", 60.0),
        reclaim_all_on_startup=_get_env_bool("RECLAIM_ALL_ON_STARTUP", True),
        shutdown_timeout_seconds=_get_env_float("SHUTDOWN_TIMEOUT_SECONDS", 30.0),
        dispatcher=dispatcher,
        dead_letter=dead_letter,
        metrics=metrics,
    )

    config_file = os.getenv(ENV_PREFIX + "CONFIG_FILE")
    if config_file:
        data = _read_config_file(config_file)
        if "retry" in data:
            config.retry = _load_retry(data["retry"])
        if "circuit_breakers" in data:
            config.circuit_breaker, config.circuit_breakers = _load_breakers(
                data["circuit_breakers"]
            )
        logger.info(f"[Config] Loaded overrides from {config_file}")

    logger.debug(
        f"[Config] db={config.db_path} workers={dispatcher.worker_count} "
        f"dlq_enabled={dead_letter.enabled} metrics_enabled={metrics.enabled}"
    )
    return config
