"""
MedEvidence API Module

Authentication helpers for the FastAPI routes.
"""

from medevidence.api.auth import create_access_token, get_current_user_id, resolve_user_id

__all__ = [
    "create_access_token",
    "get_current_user_id",
    "resolve_user_id",
]
