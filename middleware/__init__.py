"""HTTP middleware for the proxy fulfillment service."""

from .correlation import CorrelationMiddleware

__all__ = ["CorrelationMiddleware"]
