"""
HTTP administration surface for the job engine.

FastAPI app exposing submission, job queries, dead-letter administration,
engine control and metrics export.
"""
