"""API middleware package."""

from src.hub.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
