import sys
import pathlib

import httpx
import pytest

# Ensure backend root (containing the 'embedded_plugins' package) is on sys.path
BACKEND_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from embedded_plugins.middlewares.http_client import set_test_transport_override
from embedded_plugins.registry import set_test_registry_override
from tests.asgi_utils import FakeUpstream, make_echo_app


@pytest.fixture
def echo_app():
    return make_echo_app()


@pytest.fixture
def fake_upstream():
    upstream = FakeUpstream()
    set_test_transport_override(httpx.MockTransport(upstream))
    yield upstream
    set_test_transport_override(None)


@pytest.fixture(autouse=True, scope="module")
def reset_registry():
    yield
    set_test_registry_override(None)
