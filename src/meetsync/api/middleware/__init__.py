"""API middleware package."""

from src.meetsync.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
