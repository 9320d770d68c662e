"""Middleware module for Silence Notes backend."""

from app.middleware.bearer_auth import BearerAuthMiddleware

__all__ = [
    "BearerAuthMiddleware",
]
