"""
Shared pytest fixtures for the load generator test suite.

The product catalog service is replaced by :class:`FakeCatalog`, an
in-memory stand-in that honours the same status-code contract as the real
API. Each VU gets its own :class:`FakeSession`, mirroring how the runner
hands every VU a private ``requests.Session``.
"""

from __future__ import annotations

import json as jsonlib
import threading
from typing import Any
from urllib.parse import urlsplit

import pytest
import requests

from catalog_loadgen.config import RampProfile, RunConfig, Stage
from catalog_loadgen.fixtures import build_product_template
from catalog_loadgen.metrics import MetricsAggregator
from catalog_loadgen.workflow import product_workflow


class FakeResponse:
    """Minimal stand-in for ``requests.Response``."""

    def __init__(self, status_code: int, body: Any = None) -> None:
        self.status_code = status_code
        self._body = body

    def json(self) -> Any:
        if self._body is None:
            raise ValueError("no JSON body")
        return self._body


class FakeCatalog:
    """Thread-safe in-memory product catalog.

    Args:
        conflict_every: When > 0, every Nth create answers ``409`` while
            still storing the product, so only the create check fails.
        unreachable: Raise ``requests.ConnectionError`` for every request.
    """

    def __init__(self, conflict_every: int = 0, unreachable: bool = False) -> None:
        self.conflict_every = conflict_every
        self.unreachable = unreachable
        self.products: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.creates = 0
        self._lock = threading.Lock()

    def handle(self, method: str, url: str, json: Any = None, timeout: float | None = None) -> FakeResponse:
        path = urlsplit(url).path
        with self._lock:
            self.calls.append((method, path))
            if self.unreachable:
                raise requests.ConnectionError(f"connection refused: {url}")

            parts = [part for part in path.split("/") if part]
            if parts == ["products"] and method == "POST":
                return self._create(json)
            if parts == ["products"] and method == "GET":
                return FakeResponse(200, {"content": list(self.products.values()), "total_elements": len(self.products)})
            if len(parts) == 2 and parts[0] == "products":
                return self._item(method, parts[1], json)
            return FakeResponse(404, {"message": "not found"})

    def _create(self, body: Any) -> FakeResponse:
        self.creates += 1
        product = jsonlib.loads(jsonlib.dumps(body))
        self.products[product["sku"]] = product
        if self.conflict_every and self.creates % self.conflict_every == 0:
            return FakeResponse(409, {"message": "product already exists"})
        return FakeResponse(201, product)

    def _item(self, method: str, sku: str, body: Any) -> FakeResponse:
        product = self.products.get(sku)
        if product is None:
            return FakeResponse(404, {"message": f"product {sku} not found"})
        if method == "GET":
            return FakeResponse(200, product)
        if method == "PUT":
            self.products[sku] = jsonlib.loads(jsonlib.dumps(body))
            return FakeResponse(200, self.products[sku])
        if method == "PATCH":
            product.update(body)
            return FakeResponse(200, product)
        if method == "DELETE":
            del self.products[sku]
            return FakeResponse(204)
        return FakeResponse(405, {"message": "method not allowed"})


class FakeSession:
    """Per-VU session that forwards to a shared :class:`FakeCatalog`."""

    def __init__(self, catalog: FakeCatalog) -> None:
        self.catalog = catalog
        self.closed = False

    def request(self, method: str, url: str, json: Any = None, timeout: float | None = None) -> FakeResponse:
        return self.catalog.handle(method, url, json=json, timeout=timeout)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog()


@pytest.fixture
def session_factory(catalog):
    return lambda: FakeSession(catalog)


@pytest.fixture
def template():
    return build_product_template()


@pytest.fixture
def workflow():
    return product_workflow()


@pytest.fixture
def aggregator() -> MetricsAggregator:
    return MetricsAggregator()


@pytest.fixture
def short_profile() -> RampProfile:
    """Ramp to 3 VUs, hold, and drain, all within about a second."""
    return RampProfile(
        name="short",
        stages=(
            Stage(duration=0.3, target=3),
            Stage(duration=0.4, target=3),
            Stage(duration=0.3, target=0),
        ),
    )


@pytest.fixture
def fast_config(short_profile) -> RunConfig:
    return RunConfig(
        profile=short_profile,
        thresholds={"http_req_duration": ("p(99)<1500",)},
        base_url="http://catalog.test",
        pacing_s=0.01,
        request_timeout_s=1.0,
        poll_interval_s=0.05,
        graceful_stop_s=5.0,
    )
