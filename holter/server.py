from __future__ import annotations

import asyncio
import contextlib
import inspect
import socket
from collections.abc import Awaitable
from dataclasses import dataclass, field, replace
from typing import Any

import structlog
import uvicorn
from fastapi import FastAPI
from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine

from holter.api.health import router as health_router
from holter.api.metrics import router as metrics_router
from holter.config import Settings, get_settings
from holter.db.probe import Probe, as_probe
from holter.errors import BindError, ConfigurationError
from holter.observability.metrics import RegistryHandle


DEFAULT_LISTEN_ADDRESS: tuple[str, int] = ("127.0.0.1", 9090)
DEFAULT_PROBE_TIMEOUT = 5.0

log = structlog.get_logger("holter.server")


def parse_listen_address(address: str | tuple[str, int]) -> tuple[str, int]:
    """Normalize ``"host:port"``, ``"[::1]:port"`` or ``(host, port)``."""

    if isinstance(address, str):
        host, sep, port_text = address.strip().rpartition(":")
        if not sep or not host:
            raise ConfigurationError(f"listen address must be host:port, got {address!r}")
        host = host.strip("[]")
        try:
            port = int(port_text)
        except ValueError as exc:
            raise ConfigurationError(f"invalid port in listen address {address!r}") from exc
    elif isinstance(address, tuple) and len(address) == 2:
        host, port = address
    else:
        raise ConfigurationError(f"unsupported listen address: {address!r}")

    if not isinstance(host, str) or not host:
        raise ConfigurationError(f"invalid host in listen address {address!r}")
    if isinstance(port, bool) or not isinstance(port, int) or not 0 <= port <= 65535:
        raise ConfigurationError(f"port out of range in listen address {address!r}")
    return host, port


@dataclass(frozen=True)
class HolterState:
    """Read-only bundle shared by every request handler."""

    registry: RegistryHandle
    probe: Probe | None = None
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT


def create_app(state: HolterState) -> FastAPI:
    # Exactly /metrics and /healthz; no docs or schema routes.
    app = FastAPI(title="Holter", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.holter = state
    app.include_router(health_router)
    app.include_router(metrics_router)
    return app


class _SidecarServer(uvicorn.Server):
    """uvicorn server that leaves process signals to the host."""

    def __init__(self, config: uvicorn.Config, started: asyncio.Event) -> None:
        super().__init__(config)
        self._started_event = started

    @contextlib.contextmanager
    def capture_signals(self):
        yield

    def install_signal_handlers(self) -> None:
        return None

    async def startup(self, sockets: list[socket.socket] | None = None) -> None:
        await super().startup(sockets=sockets)
        if self.started:
            self._started_event.set()


class HolterServer:
    def __init__(self, listen_address: tuple[str, int], state: HolterState) -> None:
        self.listen_address = listen_address
        self.state = state
        self.app = create_app(state)
        self.local_address: tuple[str, int] | None = None
        self.started = asyncio.Event()

    @property
    def registry(self) -> RegistryHandle:
        return self.state.registry

    def _bind(self) -> socket.socket:
        host, port = self.listen_address
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
        except OSError as exc:
            sock.close()
            raise BindError(self.listen_address, exc.strerror or str(exc)) from exc
        sock.set_inheritable(True)
        bound_host, bound_port = sock.getsockname()[:2]
        self.local_address = (bound_host, bound_port)
        return sock

    async def serve(self, shutdown_signal: Awaitable[Any]) -> None:
        """Serve until ``shutdown_signal`` resolves, then drain and return.

        Raises :class:`BindError` if the listen address cannot be bound. In-flight
        requests are allowed to finish; no deadline is imposed here.
        """

        try:
            sock = self._bind()
        except BindError:
            if inspect.iscoroutine(shutdown_signal):
                shutdown_signal.close()
            raise
        config = uvicorn.Config(self.app, lifespan="off", log_config=None, access_log=False)
        server = _SidecarServer(config, self.started)
        host, port = self.local_address
        log.info("sidecar_listening", host=host, port=port, probe=self.state.probe is not None)

        serve_task = asyncio.ensure_future(server.serve(sockets=[sock]))
        signal_task = asyncio.ensure_future(shutdown_signal)
        try:
            await asyncio.wait({serve_task, signal_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            # Also reached when serve() itself is cancelled: uvicorn is always drained.
            server.should_exit = True
            if not signal_task.done():
                signal_task.cancel()
            try:
                await asyncio.shield(serve_task)
            finally:
                sock.close()
                self.started.clear()

        if signal_task.done() and not signal_task.cancelled() and signal_task.exception() is not None:
            log.warning("shutdown_signal_failed", error=repr(signal_task.exception()))
        log.info("sidecar_stopped", host=host, port=port)


def _engine_for(url: str) -> Any:
    if make_url(url).get_dialect().is_async:
        return create_async_engine(url, pool_pre_ping=True)
    return create_engine(url, pool_pre_ping=True)


@dataclass(frozen=True)
class HolterServerBuilder:
    """Fluent sidecar configuration. Each ``with_*`` call returns a new builder."""

    listen_address: tuple[str, int] = DEFAULT_LISTEN_ADDRESS
    downstream_resource: Any = field(default=None, compare=False)
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> HolterServerBuilder:
        settings = settings or get_settings()
        builder = cls().with_listen_address(settings.listen_address).with_probe_timeout(settings.probe_timeout_seconds)
        if settings.database_url:
            builder = builder.with_downstream_resource(_engine_for(settings.database_url))
        return builder

    def with_listen_address(self, address: str | tuple[str, int]) -> HolterServerBuilder:
        return replace(self, listen_address=parse_listen_address(address))

    def with_downstream_resource(self, resource: Any) -> HolterServerBuilder:
        as_probe(resource)
        return replace(self, downstream_resource=resource)

    def with_probe_timeout(self, seconds: float) -> HolterServerBuilder:
        if isinstance(seconds, bool) or not isinstance(seconds, (int, float)) or seconds <= 0:
            raise ConfigurationError(f"probe timeout must be a positive number, got {seconds!r}")
        return replace(self, probe_timeout=float(seconds))

    def build(self) -> HolterServer:
        """Install the metrics registry and return a ready-to-serve server.

        Raises :class:`~holter.errors.RegistryInstallError` if a registry is
        already installed in this process. Performs no network I/O.
        """

        registry = RegistryHandle.install()
        state = HolterState(
            registry=registry,
            probe=as_probe(self.downstream_resource),
            probe_timeout=self.probe_timeout,
        )
        return HolterServer(self.listen_address, state)
