from __future__ import annotations

import asyncio
from typing import Any, Protocol, runtime_checkable

import anyio
import anyio.to_thread
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import AsyncEngine

from holter.errors import ConfigurationError, ProbeFailure


PROBE_QUERY = "SELECT 1"


@runtime_checkable
class Probe(Protocol):
    async def ping(self) -> None:
        """Resolve on success; raise on failure."""


def _retrieve(task: asyncio.Future) -> None:
    if not task.cancelled():
        task.exception()


class EngineProbe:
    """Runs ``SELECT 1`` on a synchronous SQLAlchemy engine in a worker thread.

    Probes use their own single-token limiter, never the host's default
    threadpool tokens. A query still running when a health check times out is
    shared by the following checks instead of starting another thread, so a
    hung database ties up at most one worker.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._limiter: anyio.CapacityLimiter | None = None
        self._inflight: asyncio.Future | None = None

    def _ping_sync(self) -> None:
        with self.engine.connect() as conn:
            conn.execute(text(PROBE_QUERY))

    async def ping(self) -> None:
        if self._inflight is None or self._inflight.done():
            if self._limiter is None:
                self._limiter = anyio.CapacityLimiter(1)
            self._inflight = asyncio.ensure_future(anyio.to_thread.run_sync(self._ping_sync, limiter=self._limiter))
            self._inflight.add_done_callback(_retrieve)
        await asyncio.shield(self._inflight)


class AsyncEngineProbe:
    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    async def ping(self) -> None:
        async with self.engine.connect() as conn:
            await conn.execute(text(PROBE_QUERY))


def as_probe(resource: Any) -> Probe | None:
    """Adapt a downstream resource handle to a :class:`Probe`.

    Accepts SQLAlchemy engines (sync or async) or anything that already has
    an async ``ping()``.
    """

    if resource is None:
        return None
    if isinstance(resource, AsyncEngine):
        return AsyncEngineProbe(resource)
    if isinstance(resource, Engine):
        return EngineProbe(resource)
    if isinstance(resource, Probe):
        return resource
    raise ConfigurationError(f"unsupported downstream resource: {type(resource).__name__}")


async def run_probe(probe: Probe, timeout: float) -> None:
    """Ping ``probe`` within ``timeout`` seconds; raise :class:`ProbeFailure` otherwise."""

    try:
        await asyncio.wait_for(probe.ping(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise ProbeFailure(f"probe timed out after {timeout}s") from exc
    except Exception as exc:
        raise ProbeFailure(f"probe failed: {exc.__class__.__name__}") from exc
