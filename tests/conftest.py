from __future__ import annotations

from collections.abc import AsyncIterator, Callable

import pytest
from fastapi import APIRouter, FastAPI, HTTPException
from httpx import ASGITransport, AsyncClient
from prometheus_client.parser import text_string_to_metric_families

from holter.config import get_settings
from holter.observability.metrics import RegistryHandle, uninstall
from holter.observability.middleware import MetricsMiddleware


@pytest.fixture(autouse=True)
def clean_process_state() -> None:
    uninstall()
    get_settings.cache_clear()
    yield
    uninstall()
    get_settings.cache_clear()


@pytest.fixture
def registry() -> RegistryHandle:
    return RegistryHandle.install()


def _build_host_app(registry: RegistryHandle) -> FastAPI:
    """A stand-in for a host service that inserts the middleware into its own pipeline."""

    app = FastAPI()
    app.add_middleware(MetricsMiddleware, registry=registry)

    @app.get("/items/{item_id}")
    async def get_item(item_id: int) -> dict:
        if item_id == 404:
            raise HTTPException(status_code=404, detail="missing")
        return {"id": item_id}

    @app.get("/boom")
    async def boom() -> dict:
        raise RuntimeError("kaboom")

    api = APIRouter(prefix="/api")

    @api.get("/docs/{doc_id}")
    async def get_doc(doc_id: int) -> dict:
        return {"doc": doc_id}

    @api.get("/docs")
    async def list_docs() -> list:
        return []

    app.include_router(api)

    sub = FastAPI()

    @sub.get("/things/{thing_id}")
    async def get_thing(thing_id: str) -> dict:
        return {"thing": thing_id}

    app.mount("/v1", sub)
    return app


@pytest.fixture
def host_app(registry: RegistryHandle) -> FastAPI:
    return _build_host_app(registry)


@pytest.fixture
async def host_client(host_app: FastAPI) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=host_app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def metric_value() -> Callable[..., float | None]:
    """Look up one sample value in rendered exposition text."""

    def _lookup(text: str, sample_name: str, **labels: str) -> float | None:
        for family in text_string_to_metric_families(text):
            for sample in family.samples:
                if sample.name == sample_name and sample.labels == labels:
                    return sample.value
        return None

    return _lookup


@pytest.fixture
def sample_names() -> Callable[[str], list[tuple[str, dict]]]:
    def _all(text: str) -> list[tuple[str, dict]]:
        return [
            (sample.name, dict(sample.labels))
            for family in text_string_to_metric_families(text)
            for sample in family.samples
        ]

    return _all
