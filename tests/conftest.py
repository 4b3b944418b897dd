import asyncio
from datetime import datetime, timezone

import pytest

from app.core.config import Settings
from shared.auth.jwt_handler import create_access_token
from shared.utils.rate_limiter import limiter
from services.ticket_registry.models.registry import EventMetadata

ADMIN = "0x" + "ad" * 20
BUYER = "0x" + "b1" * 20
OTHER = "0x" + "c2" * 20
GATE = "0x00000000000000000000000000000000000000a1"
NETWORK = 11155111
TEST_SECRET = "test-secret"


def run(coro):
    return asyncio.run(coro)


def make_metadata(name="Concierto de Prueba", venue="Teatro Caupolicán"):
    return EventMetadata(
        name=name,
        symbol="TCK",
        venue=venue,
        starts_at=datetime(2026, 12, 1, 21, 0, tzinfo=timezone.utc),
        metadata_uri="ipfs://evento",
    )


def auth_headers(identity, secret=TEST_SECRET):
    return {"Authorization": f"Bearer {create_access_token(identity, secret=secret)}"}


def make_settings(**overrides):
    values = {
        "APP_ENV": "test",
        "CORS_ORIGINS": "http://localhost:3000",
        "REGISTRY_BACKEND": "memory",
        "REDIS_URL": "",
        "JWT_SECRET_KEY": TEST_SECRET,
        "NETWORK_ID": NETWORK,
        "GATEWAY_VERIFIER_ID": GATE,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    limiter.reset()
    yield
    limiter.reset()
