# tests/conftest.py
from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from server import Gateway, create_app
from settings import Settings, load_settings
from tokens import TokenService

DESTINATION = "https://files.example.net/private/report.pdf"
TEST_SECRET = "test-secret-0123456789abcdef0123456789abcdef"
BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def settings_overrides() -> dict:
    """Per-test tweaks; override this fixture in a module to change them."""
    return {}


@pytest.fixture()
def test_settings(settings_overrides: dict) -> Settings:
    values = {
        "destination_url": DESTINATION,
        "secret_key": TEST_SECRET,
        "pow_difficulty": 4,
        "rate_limit_max": 50,
        "ua_denylist": ["bot", "crawl", "spider", "curl", "wget", "python", "headless"],
        "asn_denylist": ["AS14061"],
        "webhook_url": None,
    }
    values.update(settings_overrides)
    return load_settings(**values)


@pytest.fixture()
def app(test_settings: Settings, clock: FakeClock) -> FastAPI:
    return create_app(test_settings, clock=clock)


@pytest.fixture()
def gateway(app: FastAPI) -> Gateway:
    return app.state.gateway


@pytest.fixture()
def tokens(gateway: Gateway) -> TokenService:
    return gateway.tokens


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test", follow_redirects=False) as test_client:
        yield test_client


@pytest.fixture()
def browser_headers() -> dict:
    return {"user-agent": BROWSER_UA, "x-forwarded-for": "198.51.100.7, 10.0.0.1"}
