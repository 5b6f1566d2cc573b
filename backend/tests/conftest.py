"""
Pytest configuration and shared fixtures for backend tests.
Every test gets its own in-memory database and change feed.
"""
import asyncio
import hashlib
import hmac
import json
import os
import socket
import time

# Must be set before config/database are imported
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("STRIPE_SECRET_KEY", "")
os.environ.setdefault("SEED_DEMO_DATA", "false")

import pytest
import httpx
import uvicorn
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

import models  # noqa: F401  registers tables on Base.metadata
from database import Base, get_db
from auth import create_access_token
from models import Tenant, Service
from realtime import ChangeFeed
from tier_policy import SubscriptionTier


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def feed():
    return ChangeFeed()


async def make_tenant(db, slug, tier, **overrides) -> Tenant:
    tenant = Tenant(
        slug=slug,
        name=overrides.pop("name", slug.replace("-", " ").title()),
        tier=tier,
        timezone=overrides.pop("timezone", "UTC"),
        stripe_account_id=overrides.pop("stripe_account_id", f"acct_{slug.replace('-', '_')}"),
        is_demo=overrides.pop("is_demo", False),
        **overrides
    )
    db.add(tenant)
    await db.commit()
    return tenant


@pytest.fixture
async def starter_tenant(db):
    return await make_tenant(db, "sunny-clean", SubscriptionTier.STARTER)


@pytest.fixture
async def pro_tenant(db):
    return await make_tenant(db, "river-music", SubscriptionTier.PRO, business_type="education", timezone="America/New_York")


@pytest.fixture
async def elite_tenant(db):
    return await make_tenant(db, "glow-studio", SubscriptionTier.ELITE, challenge_type="elite")


@pytest.fixture
async def pro_service(db, pro_tenant):
    service = Service(tenant_id=pro_tenant.id, name="Piano Lesson", price=35.0, duration_minutes=30)
    db.add(service)
    await db.commit()
    return service


def sign_stripe_payload(event: dict, secret: str):
    """Body and Stripe-Signature header the way Stripe signs webhook deliveries"""
    payload = json.dumps(event)
    timestamp = int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return payload.encode(), f"t={timestamp},v1={digest}"


def auth_headers(tenant: Tenant) -> dict:
    token = create_access_token({"sub": tenant.owner_email or tenant.slug}, tenant_id=tenant.id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def client(session_maker):
    """Async client against the app with get_db bound to the test database"""
    from main import app

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
    app.dependency_overrides.clear()


async def wait_until(condition, timeout=5.0):
    async def poll():
        while not condition():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
async def live_server():
    """The app served by uvicorn on a free local port, sharing the test's event loop"""
    from main import app

    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]

    server = uvicorn.Server(uvicorn.Config(app, host="127.0.0.1", port=port, lifespan="off", log_level="warning"))
    serving = asyncio.create_task(server.serve())
    await wait_until(lambda: server.started or serving.done())
    if serving.done():
        serving.result()

    yield f"http://127.0.0.1:{port}"

    server.should_exit = True
    await asyncio.wait_for(serving, 10)
