"""
Job Engine.

Durable background job processing for platform events: idempotent submission,
per-type retry with backoff, per-dependency circuit breakers, dead-letter
quarantine and execution telemetry.
"""

__version__ = "1.0.0"
