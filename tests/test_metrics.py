from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from holter.errors import AlreadyInstalled, RegistryInstallError
from holter.observability.metrics import RegistryHandle


LABELS = {"method": "GET", "route": "/items/{item_id}", "status": "200"}


def test_install_is_once_per_process(registry) -> None:
    assert RegistryHandle.installed() is registry
    with pytest.raises(RegistryInstallError):
        RegistryHandle.install()
    with pytest.raises(AlreadyInstalled):
        RegistryHandle.install()
    assert RegistryHandle.installed() is registry


def test_concurrent_counter_increments_accumulate(registry, metric_value) -> None:
    def bump(_: int) -> None:
        for _ in range(100):
            registry.record_counter(LABELS, 1)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(bump, range(8)))

    assert metric_value(registry.render(), "http_requests_total", **LABELS) == 800


def test_counter_delta_is_additive(registry, metric_value) -> None:
    registry.record_counter(LABELS, 2.5)
    registry.record_counter(LABELS, 0.5)
    assert metric_value(registry.render(), "http_requests_total", **LABELS) == pytest.approx(3.0)


def test_histogram_count_and_sum(registry, metric_value) -> None:
    for value in (0.01, 0.02, 0.03):
        registry.record_histogram(LABELS, value)

    text = registry.render()
    assert metric_value(text, "http_request_duration_seconds_count", **LABELS) == 3
    assert metric_value(text, "http_request_duration_seconds_sum", **LABELS) == pytest.approx(0.06)
    # Buckets are cumulative; everything fits under the +Inf bucket.
    assert metric_value(text, "http_request_duration_seconds_bucket", le="+Inf", **LABELS) == 3
    assert metric_value(text, "http_request_duration_seconds_bucket", le="0.025", **LABELS) == 2


def test_distinct_label_tuples_never_merge(registry, metric_value) -> None:
    ok = dict(LABELS)
    missing = {**LABELS, "status": "404"}
    posted = {**LABELS, "method": "POST"}
    registry.record_counter(ok, 1)
    registry.record_counter(ok, 1)
    registry.record_counter(missing, 1)
    registry.record_counter(posted, 1)

    text = registry.render()
    assert metric_value(text, "http_requests_total", **ok) == 2
    assert metric_value(text, "http_requests_total", **missing) == 1
    assert metric_value(text, "http_requests_total", **posted) == 1


def test_recording_errors_are_swallowed(registry, metric_value) -> None:
    # Counters cannot go down; prometheus_client raises, the handle must not.
    registry.record_counter(LABELS, -1)
    # Same metric name with a different label set collides in the registry.
    registry.record_counter({"route": "/x"}, 1)
    registry.record_histogram({"route": "/x"}, 0.1, name="http_requests")

    text = registry.render()
    assert metric_value(text, "http_requests_total", **LABELS) == 0


def test_render_uses_exposition_format(registry) -> None:
    registry.record_counter(LABELS, 1)
    text = registry.render()
    assert "# TYPE http_requests counter" in text.splitlines()
    assert 'http_requests_total{method="GET",route="/items/{item_id}",status="200"} 1.0' in text
    assert registry.content_type.startswith("text/plain")
