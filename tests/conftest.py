"""
Test configuration and fixtures for the Backlify control plane.
Every test gets its own in-memory database, a frozen clock and a fully wired service container.
"""

import asyncio
import os

# Cheap hashes; must be set before backlify.auth.models builds its CryptContext
os.environ.setdefault("BCRYPT_ROUNDS", "4")

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from backlify.auth.database_models import UserDB
from backlify.auth.models import get_password_hash
from backlify.clock import Clock
from backlify.config import Settings
from backlify.database import Database
from backlify.integrations.schema_backend import SchemaBackend
from backlify.main import create_app
from backlify.models.billing import UserSubscriptionDB
from backlify.models.security import ApiLogDB, SecurityLogDB
from backlify.services.container import ServiceContainer

# ============================================================================
# CONSTANTS
# ============================================================================

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
TEST_PRIVATE_KEY = "test-private-key"
TEST_PUBLIC_KEY = "i000000001"
TEST_PASSWORD = "Str0ng!Pass"
TEST_CLIENT_IP = "testclient"
GENERATED_API_ID = "3f2b8c1e-9a4d-4e6f-8b7a-1c2d3e4f5a6b"

# ============================================================================
# TEST DOUBLES
# ============================================================================


class FrozenClock(Clock):
    """Clock that only moves when a test moves it"""

    def __init__(self, current: datetime):
        self.current = current

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current

    def set(self, moment: datetime) -> None:
        self.current = moment


class RecordingSchemaBackend(SchemaBackend):
    """Echoes what the control plane forwarded"""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.fail_with: Optional[Exception] = None
        self.delay = 0.0

    async def _record(self, operation: str, **details) -> Dict[str, Any]:
        self.calls.append({"operation": operation, **details})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        return {"success": True, "operation": operation, **details}

    async def generate_schema(self, principal, body):
        return await self._record("generate_schema", principal=principal, body=body)

    async def modify_schema(self, principal, body):
        return await self._record("modify_schema", principal=principal, body=body)

    async def create_api(self, principal, body):
        return await self._record("create_api", principal=principal, body=body)

    async def handle_api_request(self, principal, api_id, method, path, body, query=None):
        return await self._record(
            "handle_api_request",
            principal=principal,
            api_id=api_id,
            method=method,
            path=path,
            body=body,
            query=query or {},
        )


# ============================================================================
# CORE FIXTURES
# ============================================================================

@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 15, 12, 0, 0))


@pytest.fixture
def settings() -> Settings:
    return Settings(
        environment="test",
        database_url=TEST_DATABASE_URL,
        epoint_public_key=TEST_PUBLIC_KEY,
        epoint_private_key=TEST_PRIVATE_KEY,
        scheduler_enabled=False,
        log_level="WARNING",
    )


@pytest.fixture
def database() -> Database:
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    return Database(engine)


@pytest.fixture
def schema_backend() -> RecordingSchemaBackend:
    return RecordingSchemaBackend()


@pytest.fixture
def services(settings, database, clock, schema_backend) -> ServiceContainer:
    return ServiceContainer.build(settings, database=database, clock=clock, schema_backend=schema_backend)


@pytest.fixture
async def store(services):
    """Services with tables created, for tests that call services directly"""
    await services.database.create_all()
    yield services
    await services.close()


@pytest.fixture
def app(settings, services):
    return create_app(settings, services)


@pytest.fixture
def client(app):
    """Lifespan creates the tables; the portal runs seed coroutines on the app's loop"""
    with TestClient(app) as test_client:
        yield test_client


# ============================================================================
# SEED HELPERS
# ============================================================================

async def create_user(
    services: ServiceContainer,
    username: str = "alice",
    password: str = TEST_PASSWORD,
    plan_id: str = "basic",
    **fields,
) -> UserDB:
    now = services.clock.now()
    user = UserDB(
        username=username,
        email=fields.pop("email", f"{username}@example.com"),
        password_hash=get_password_hash(password),
        plan_id=plan_id,
        created_at=now,
        updated_at=now,
        **fields,
    )
    async with services.database.session() as db:
        db.add(user)
        await db.commit()
        await db.refresh(user)
    return user


async def create_subscription(
    services: ServiceContainer,
    user: UserDB,
    plan_id: str = "pro",
    expires_in: timedelta = timedelta(days=30),
    status: str = "active",
    api_id: Optional[str] = None,
) -> UserSubscriptionDB:
    now = services.clock.now()
    subscription = UserSubscriptionDB(
        user_id=user.id,
        plan_id=plan_id,
        api_id=api_id,
        scope_key=api_id or "global",
        status=status,
        start_date=now,
        expiration_date=now + expires_in,
        created_at=now,
        updated_at=now,
    )
    async with services.database.session() as db:
        db.add(subscription)
        await db.commit()
        await db.refresh(subscription)
    return subscription


async def add_api_logs(services: ServiceContainer, count: int, **fields) -> None:
    values = {
        "timestamp": services.clock.now(),
        "ip": TEST_CLIENT_IP,
        "method": "GET",
        "endpoint": "/",
        "status_code": 200,
        **fields,
    }
    async with services.database.session() as db:
        db.add_all([ApiLogDB(**values) for _ in range(count)])
        await db.commit()


async def fetch_all(services: ServiceContainer, model, *criteria) -> list:
    async with services.database.session() as db:
        result = await db.execute(select(model).where(*criteria))
        return list(result.scalars().all())


async def security_event_types(services: ServiceContainer) -> List[str]:
    return [row.type for row in await fetch_all(services, SecurityLogDB)]


def auth_headers(services: ServiceContainer, username: str = "alice") -> Dict[str, str]:
    return {"Authorization": f"Bearer {services.tokens.issue_access(username)}"}


@pytest.fixture
def run(client):
    """Run a coroutine function on the TestClient's event loop"""
    def _run(fn, *args, **kwargs):
        return client.portal.call(lambda: fn(*args, **kwargs))
    return _run
