"""Middleware for Upload Registry service."""

from services.upload_registry.app.middleware.logging import RequestLoggingMiddleware

__all__ = ["RequestLoggingMiddleware"]
