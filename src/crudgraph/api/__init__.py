"""
API module - FastAPI endpoints.
"""

from __future__ import annotations

from .router import create_crud_router, get_principal, install_error_handlers

__all__ = [
    "create_crud_router",
    "get_principal",
    "install_error_handlers",
]
