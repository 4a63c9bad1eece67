"""
Pytest configuration.

Live test URLs are loaded from environment variables for privacy.
Locally, add them to your .env file. For CI/CD, configure GitHub Secrets.
"""

import os
from pathlib import Path
from typing import Callable, Dict, Union

import httpx
import pytest
from dotenv import load_dotenv

from mirrorflow_proxy.configs import settings

# Load .env file from project root
project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env")

HTTPX_CLIENT_FACTORIES = [
    "mirrorflow_proxy.extractors.base.create_httpx_client",
    "mirrorflow_proxy.utils.playlist_classifier.create_httpx_client",
    "mirrorflow_proxy.handlers.create_httpx_client",
]

Route = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


def pytest_configure(config):
    """Configure pytest-asyncio mode."""
    config.addinivalue_line("markers", "asyncio: mark test as async")


@pytest.fixture
def get_test_url():
    """
    Factory fixture that returns a function to get test URLs from environment.

    Usage:
        def test_something(get_test_url):
            url = get_test_url("Kwik")
            if url is None:
                pytest.skip("TEST_URL_KWIK not set")
    """

    def _get_url(extractor_name: str) -> str | None:
        env_var = f"TEST_URL_{extractor_name.upper()}"
        return os.environ.get(env_var)

    return _get_url


@pytest.fixture
def mock_upstream(monkeypatch):
    """
    Route every outgoing httpx request to canned responses.

    Usage:
        requests = mock_upstream({"https://cdn.example/a.m3u8": httpx.Response(200, text="#EXTM3U")})

    Unknown URLs answer 404. The returned list collects every request sent.
    """

    def _install(routes: Dict[str, Route]) -> list:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            route = routes.get(str(request.url))
            if route is None:
                return httpx.Response(404, text="not found")
            if callable(route):
                return route(request)
            return route

        transport = httpx.MockTransport(handler)

        def fake_client(follow_redirects: bool = True, **kwargs) -> httpx.AsyncClient:
            return httpx.AsyncClient(transport=transport, follow_redirects=follow_redirects, **kwargs)

        for target in HTTPX_CLIENT_FACTORIES:
            monkeypatch.setattr(target, fake_client)
        return seen

    return _install


@pytest.fixture
def allowed_hosts(monkeypatch):
    monkeypatch.setattr(settings, "allowed_hosts", ["cdn.example", "*.cdn.example"])
    return settings.allowed_hosts
