"""
Shared fixtures for the inspector tests.
"""

import pytest

from app import app as flask_app
from detection import ProtectionEvaluator, RequestSecurityContext
from ip_ranges import RangeRegistry

from addresses import OUTSIDE_IP


@pytest.fixture
def registry() -> RangeRegistry:
    """The built-in Cloudflare snapshot."""
    return RangeRegistry.builtin()


@pytest.fixture
def evaluator(registry) -> ProtectionEvaluator:
    return ProtectionEvaluator(registry)


@pytest.fixture
def make_context():
    """Factory for request contexts with sensible defaults."""
    def _make(remote_address=OUTSIDE_IP, headers=None, transport_secure=False, **kwargs):
        return RequestSecurityContext(
            remote_address=remote_address,
            headers=headers or {},
            transport_secure=transport_secure,
            declared_protocol="https" if transport_secure else "http",
            **kwargs,
        )
    return _make


@pytest.fixture
def app(registry):
    flask_app.config.update(TESTING=True, RANGE_REGISTRY=registry, TRACE_HEADER="CF-Ray", GEOIP_MMDB="")
    yield flask_app


@pytest.fixture
def client(app):
    return app.test_client()
