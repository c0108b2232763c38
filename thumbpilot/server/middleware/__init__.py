"""
Middleware for the service host.
"""

from thumbpilot.server.middleware.metrics import MetricsMiddleware, metrics_endpoint

__all__ = [
    "MetricsMiddleware",
    "metrics_endpoint",
]
