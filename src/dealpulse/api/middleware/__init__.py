"""API middleware package."""

from src.dealpulse.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
