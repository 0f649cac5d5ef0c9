from __future__ import annotations

from collections.abc import Mapping
from threading import Lock

import structlog
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Histogram, generate_latest

from holter.errors import AlreadyInstalled


REQUEST_COUNT = "http_requests"
REQUEST_DURATION = "http_request_duration_seconds"

_INSTALL_LOCK = Lock()
_INSTALLED: RegistryHandle | None = None

log = structlog.get_logger("holter.metrics")


class RegistryHandle:
    """Process-wide Prometheus registry.

    Obtain one through :meth:`install`; it is then passed by reference to the
    middleware and the sidecar routes. Metric families are created on first
    use for each (name, label names) pair; prometheus_client series are
    internally synchronized, so recording needs no extra locking.
    """

    content_type = CONTENT_TYPE_LATEST

    def __init__(self) -> None:
        self.registry = CollectorRegistry()
        self._families: dict[tuple[str, str, tuple[str, ...]], Counter | Histogram] = {}
        self._families_lock = Lock()

    @classmethod
    def install(cls) -> RegistryHandle:
        global _INSTALLED
        with _INSTALL_LOCK:
            if _INSTALLED is not None:
                raise AlreadyInstalled()
            _INSTALLED = cls()
            return _INSTALLED

    @staticmethod
    def installed() -> RegistryHandle | None:
        return _INSTALLED

    def _family(self, kind: str, name: str, labelnames: tuple[str, ...]) -> Counter | Histogram:
        key = (kind, name, labelnames)
        family = self._families.get(key)
        if family is not None:
            return family
        with self._families_lock:
            family = self._families.get(key)
            if family is None:
                if kind == "counter":
                    family = Counter(name, f"Total {name.replace('_', ' ')}", labelnames, registry=self.registry)
                else:
                    family = Histogram(name, f"{name.replace('_', ' ')}", labelnames, registry=self.registry)
                self._families[key] = family
            return family

    def record_counter(self, labels: Mapping[str, str], delta: float = 1.0, name: str = REQUEST_COUNT) -> None:
        try:
            labelnames = tuple(sorted(labels))
            family = self._family("counter", name, labelnames)
            series = family.labels(**labels) if labelnames else family
            series.inc(delta)
        except Exception:
            # Recording must never fail the request path.
            log.debug("metric_record_failed", metric=name, kind="counter", exc_info=True)

    def record_histogram(self, labels: Mapping[str, str], value: float, name: str = REQUEST_DURATION) -> None:
        try:
            labelnames = tuple(sorted(labels))
            family = self._family("histogram", name, labelnames)
            series = family.labels(**labels) if labelnames else family
            series.observe(value)
        except Exception:
            log.debug("metric_record_failed", metric=name, kind="histogram", exc_info=True)

    def render(self) -> str:
        return generate_latest(self.registry).decode("utf-8")


def uninstall() -> None:
    """Forget the installed registry (used by tests)."""

    global _INSTALLED
    with _INSTALL_LOCK:
        _INSTALLED = None
