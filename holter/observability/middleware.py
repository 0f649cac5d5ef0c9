from __future__ import annotations

from collections.abc import Sequence
from time import perf_counter
from typing import Any, Callable

import structlog
from starlette.routing import BaseRoute, Match

from holter.observability.metrics import REQUEST_COUNT, REQUEST_DURATION, RegistryHandle


log = structlog.get_logger("holter.access")


def _match_route(routes: Sequence[BaseRoute], scope: dict[str, Any]) -> tuple[Match, str | None]:
    """Return the best match level and route template for ``scope``.

    Mounted routers are searched recursively and their prefixes joined onto
    the child template. A full match wins over a partial one (path matched,
    method not allowed). Entries exposing neither a path nor child routes
    cannot name a template and are skipped.
    """

    partial: str | None = None
    for route in routes:
        template = getattr(route, "path", None)
        children = getattr(route, "routes", None)
        if not isinstance(children, (list, tuple)):
            children = None
        if not isinstance(template, str) and not children:
            continue

        match, child_scope = route.matches(scope)
        if match == Match.NONE:
            continue

        template = template if isinstance(template, str) else ""
        if children:
            child_match, child_template = _match_route(children, {**scope, **child_scope})
            if child_match == Match.NONE:
                continue
            match = child_match
            template = template.rstrip("/") + (child_template or "")

        if match == Match.FULL:
            return Match.FULL, template
        if partial is None:
            partial = template

    if partial is not None:
        return Match.PARTIAL, partial
    return Match.NONE, None


def _dispatched_template(scope: dict[str, Any], entry_root_path: str) -> str | None:
    """Template of the route the router dispatched to, if it recorded one.

    FastAPI leaves the matched (or method-mismatched) route on ``scope["route"]``;
    mounts extend ``root_path``, which is joined back on as the prefix.
    """

    template = getattr(scope.get("route"), "path", None)
    if not isinstance(template, str) or not template:
        return None
    root_path = scope.get("root_path", "") or ""
    prefix = root_path[len(entry_root_path):] if root_path.startswith(entry_root_path) else ""
    return prefix.rstrip("/") + template


class MetricsMiddleware:
    """Records request count and latency per (method, route, status).

    Wraps any ASGI app. Only requests that reach a known route template are
    recorded; arbitrary client paths would otherwise blow up label
    cardinality. Responses and exceptions pass through untouched.
    """

    def __init__(
        self,
        app: Callable[..., Any],
        registry: RegistryHandle,
        routes: Sequence[BaseRoute] | None = None,
    ) -> None:
        self.app = app
        self.registry = registry
        self.routes = routes

    def _routes_for(self, scope: dict[str, Any]) -> Sequence[BaseRoute]:
        if self.routes is not None:
            return self.routes
        routes = getattr(self.app, "routes", None)
        if routes is None:
            # Starlette puts the application on the scope before entering the middleware stack.
            routes = getattr(scope.get("app"), "routes", None)
        return routes or ()

    def route_template(self, scope: dict[str, Any]) -> str | None:
        """Resolve the template by matching ``scope`` against the known routes."""

        _, template = _match_route(self._routes_for(scope), scope)
        return template

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        start = perf_counter()
        # The router mutates the scope while dispatching; keep the request as received.
        request_scope = dict(scope)
        entry_root_path = scope.get("root_path", "") or ""
        method = scope.get("method", "GET")
        status_code = 500

        async def send_wrapper(message: dict[str, Any]) -> None:
            nonlocal status_code
            if message.get("type") == "http.response.start":
                status_code = int(message.get("status", 500))
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception:
            status_code = 500
            raise
        finally:
            elapsed = perf_counter() - start
            route = _dispatched_template(scope, entry_root_path) or self.route_template(request_scope)
            if route is not None:
                labels = {"method": method, "route": route, "status": str(status_code)}
                self.registry.record_counter(labels, 1, name=REQUEST_COUNT)
                self.registry.record_histogram(labels, elapsed, name=REQUEST_DURATION)
                log.debug(
                    "http_request",
                    method=method,
                    route=route,
                    status_code=status_code,
                    elapsed_ms=round(elapsed * 1000.0, 2),
                )
