"""ASGI middleware."""

from .request_tracking import RequestTrackingMiddleware

__all__ = ["RequestTrackingMiddleware"]
