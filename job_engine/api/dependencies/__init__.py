"""
API Dependencies package.

Authentication for administrative endpoints.
"""

from .auth import verify_api_key, API_AUTH_ENABLED

__all__ = ["verify_api_key", "API_AUTH_ENABLED"]
