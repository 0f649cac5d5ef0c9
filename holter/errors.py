from __future__ import annotations


class HolterError(Exception):
    """Base class for sidecar errors."""


class ConfigurationError(HolterError, ValueError):
    pass


class RegistryInstallError(HolterError):
    """The process-wide metrics registry could not be installed."""


class AlreadyInstalled(RegistryInstallError):
    def __init__(self) -> None:
        super().__init__("a metrics registry is already installed in this process")


class BindError(HolterError):
    def __init__(self, address: tuple[str, int], reason: str) -> None:
        self.address = address
        host, port = address
        super().__init__(f"cannot bind {host}:{port}: {reason}")


class ProbeFailure(HolterError):
    """Downstream probe query failed or timed out."""
