"""
Job Engine Test Suite.

- Retry policy and circuit breaker unit tests
- Persistence invariants (atomic claim, singleton keys)
- Dispatcher outcome handling and metrics completeness
- Dead-letter recovery and stale-claim recovery
- End-to-end scenarios through JobEngineService
"""
