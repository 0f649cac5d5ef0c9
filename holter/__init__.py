"""Holter: an embeddable metrics and health sidecar for ASGI services."""

from holter.errors import AlreadyInstalled, BindError, ConfigurationError, HolterError, ProbeFailure, RegistryInstallError
from holter.observability.metrics import RegistryHandle
from holter.observability.middleware import MetricsMiddleware
from holter.server import DEFAULT_LISTEN_ADDRESS, HolterServer, HolterServerBuilder, HolterState

__all__ = [
    "AlreadyInstalled",
    "BindError",
    "ConfigurationError",
    "DEFAULT_LISTEN_ADDRESS",
    "HolterError",
    "HolterServer",
    "HolterServerBuilder",
    "HolterState",
    "MetricsMiddleware",
    "ProbeFailure",
    "RegistryHandle",
    "RegistryInstallError",
]
