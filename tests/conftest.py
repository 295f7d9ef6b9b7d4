"""
Shared fixtures: settings without .env, a seeded in-memory repository and a
TestClient wired through api.init_state (the lifespan is not run).
"""
import asyncio
import json
from typing import Callable, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from config import Settings
from models import BuildCreate, ComponentCreate
from repository import InMemoryRepository

ADMIN_KEY = "test-admin-key"
CUSTOMER_KEY = "test-customer-key"
WEBHOOK_SECRET = "whsec_test"
GATEWAY_SECRET = "rzp_secret_test"


def make_settings(**overrides) -> Settings:
    values = dict(
        environment="test",
        storage_driver="memory",
        admin_emails="admin@fusionforge.com",
        api_keys=f"{ADMIN_KEY}:admin,{CUSTOMER_KEY}:customer",
        brevo_api_key=None,
        llm_api_key=None,
        razorpay_key_id=None,
        razorpay_key_secret=None,
        razorpay_webhook_secret=None,
        log_format="text",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def gateway_settings(**overrides) -> Settings:
    return make_settings(
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret=GATEWAY_SECRET,
        **overrides,
    )


def json_transport(handler: Callable[[httpx.Request], tuple[int, dict]]) -> httpx.MockTransport:
    """MockTransport whose handler returns (status, json body)."""
    def respond(request: httpx.Request) -> httpx.Response:
        status, body = handler(request)
        return httpx.Response(status, json=body)
    return httpx.MockTransport(respond)


def request_json(request: httpx.Request) -> Optional[dict]:
    return json.loads(request.content) if request.content else None


def run(coro):
    return asyncio.run(coro)


async def seed(repo: InMemoryRepository) -> None:
    gaming = await repo.create_build(BuildCreate(
        name="Performance Gamer", category="Performance Gamers", base_price=80000,
        processor="Ryzen 7 7700X", gpu="RTX 4070", stock_quantity=10, low_stock_threshold=2,
        description="1440p gaming rig", budget_range="₹75,000 - ₹85,000",
    ))
    await repo.create_build(BuildCreate(
        name="Budget Starter", category="Budget Builders", base_price=30000,
        processor="Ryzen 5 5600G", stock_quantity=1, low_stock_threshold=2,
    ))
    await repo.create_component(ComponentCreate(
        build_id=gaming.id, name="RTX 4070", type="gpu", price="₹55,000",
        specification="12GB GDDR6X", stock_quantity=3, low_stock_threshold=5,
    ))


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def repo():
    repo = InMemoryRepository()
    run(seed(repo))
    return repo


@pytest.fixture
def make_client(repo):
    """Build a TestClient around `repo` with the given settings and outbound transport."""
    import api

    def factory(settings: Optional[Settings] = None,
                transport: Optional[httpx.MockTransport] = None) -> TestClient:
        http = httpx.AsyncClient(transport=transport) if transport else None
        api.init_state(settings or make_settings(), repo, http)
        return TestClient(api.app)

    return factory


@pytest.fixture
def client(make_client):
    return make_client()


@pytest.fixture
def admin_headers():
    return {"X-API-Key": ADMIN_KEY}
