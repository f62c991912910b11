"""
API Routers package.
"""

from . import jobs, dead_letter, engine, metrics

__all__ = ["jobs", "dead_letter", "engine", "metrics"]
