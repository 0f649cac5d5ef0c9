"""Observability primitives for the sidecar.

A process-wide Prometheus registry handle, the ASGI middleware that feeds it,
and structlog configuration for JSON logs.
"""

from __future__ import annotations

from holter.observability.logging import configure_logging
from holter.observability.metrics import RegistryHandle
from holter.observability.middleware import MetricsMiddleware

__all__ = ["MetricsMiddleware", "RegistryHandle", "configure_logging"]
