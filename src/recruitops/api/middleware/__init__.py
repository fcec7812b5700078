"""API middleware package."""

from src.recruitops.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
