import asyncio
import base64
import inspect
import json
import os
import sys
import tempfile
from pathlib import Path

# Point the gateway at an empty config dir and a fake upstream before any
# import can build settings.
_test_tmp_dir = tempfile.mkdtemp(prefix="flowgate_test_")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("CONFIG_DIR", _test_tmp_dir)
os.environ.setdefault("PUBLIC_DIR", _test_tmp_dir)
os.environ.setdefault("UPSTREAM_URL", "https://flowise.test")
os.environ.setdefault("UPSTREAM_API_KEY", "upstream-secret")

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from flowgate.config import ChatflowSpec, GatewayConfig, OAuthBlock, Settings  # noqa: E402
from flowgate.service.runtime import Runtime, set_runtime_for_tests  # noqa: E402

ACME_ID = "3f1c2a9e-8b7d-4c6e-9a51-0d2e4f6a8b10"
DEMO_ID = "7a8b9c0d-1e2f-4a3b-8c4d-5e6f7a8b9c0d"
ACME_ORIGIN = "https://acme.example"
DEMO_ORIGIN = "https://demo.example"
AUTHORITY = "https://login.acme.example"


def make_token(claims: dict) -> str:
    """Unsigned JWT-shaped token carrying ``claims``."""

    def _segment(value: dict) -> str:
        raw = json.dumps(value).encode()
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()

    return f"{_segment({'alg': 'none'})}.{_segment(claims)}.signature"


def tenant_specs() -> list[ChatflowSpec]:
    return [
        ChatflowSpec(
            identifier="acme",
            chatflow_id=ACME_ID,
            allowed_domains=[ACME_ORIGIN],
            oauth=OAuthBlock(client_id="acme-client", authority=AUTHORITY),
        ),
        ChatflowSpec(identifier="demo", chatflow_id=DEMO_ID, allowed_domains=[DEMO_ORIGIN]),
    ]


class FakeUpstream:
    """MockTransport handler that records requests and serves canned responses."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], object] = {}

    def on(self, method: str, path: str, response) -> None:
        """Register an ``httpx.Response`` or a callable ``request -> Response``."""
        self.routes[(method.upper(), path)] = response

    def last(self, path_prefix: str = "") -> httpx.Request:
        matching = [r for r in self.requests if r.url.path.startswith(path_prefix)]
        assert matching, f"no upstream request to {path_prefix!r}"
        return matching[-1]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(200, json={"path": request.url.path, "method": request.method})
        if callable(handler):
            return handler(request)
        return handler


@pytest.fixture(autouse=True)
def reset_runtime_state():
    set_runtime_for_tests(None)
    yield
    set_runtime_for_tests(None)


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        test_mode=True,
        upstream_url="https://flowise.test",
        upstream_api_key="upstream-secret",
        config_dir=str(tmp_path),
        public_dir=str(tmp_path),
    )


@pytest.fixture
def gateway() -> GatewayConfig:
    return GatewayConfig(
        upstream_url="https://flowise.test",
        upstream_api_key="upstream-secret",
        chatflows=tenant_specs(),
    )


@pytest.fixture
def runtime(settings, gateway, upstream):
    instance = Runtime(settings, gateway, transport=httpx.MockTransport(upstream))
    set_runtime_for_tests(instance)
    yield instance
    set_runtime_for_tests(None)


@pytest.fixture
def client(runtime):
    from flowgate.app import app

    with TestClient(app) as test_client:
        yield test_client


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
