# tests/conftest.py - Shared test fixtures
import os
import uuid
from typing import Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
for _key in ("LLM_PROVIDER", "GROQ_API_KEY", "OPENAI_API_KEY", "ANTHROPIC_API_KEY", "OTEL_EXPORTER_OTLP_ENDPOINT"):
    os.environ.pop(_key, None)

import auth as auth_module
from models import (
    Base, User, Client, ClientMembership, UserRole, ClientRole, PlanTier, AuthAssurance,
)
from auth import AuthService
from database import get_db_session
from main import app

PASSWORD = "TestPassword123!"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine):
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(db_engine):
    """HTTP test client with overridden DB dependency"""
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_login_attempts():
    auth_module.login_throttle.clear()
    auth_module.mfa_throttle.clear()
    yield
    auth_module.login_throttle.clear()
    auth_module.mfa_throttle.clear()


# ============================================================
# FACTORIES
# ============================================================

async def make_user(db_session, email: str, role: UserRole = UserRole.USER, display_name: str = "") -> User:
    user = User(
        id=str(uuid.uuid4()),
        email=email,
        display_name=display_name or email.split("@")[0].title(),
        password_hash=AuthService.hash_password(PASSWORD),
        role=role,
        is_active=True,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


async def make_client(db_session, name: str, plan_tier: PlanTier = PlanTier.FREE, require_mfa: bool = False) -> Client:
    tenant = Client(id=str(uuid.uuid4()), name=name, industry="Fintech", plan_tier=plan_tier, require_mfa=require_mfa)
    db_session.add(tenant)
    await db_session.commit()
    await db_session.refresh(tenant)
    return tenant


async def add_membership(db_session, user: User, tenant: Client, role: ClientRole) -> ClientMembership:
    membership = ClientMembership(user_id=user.id, client_id=tenant.id, role=role)
    db_session.add(membership)
    await db_session.commit()
    return membership


def get_auth_headers(
    user: User,
    aal: AuthAssurance = AuthAssurance.AAL1,
    client_id: Optional[str] = None,
) -> dict:
    """Bearer headers for a user, optionally pinned to a client via X-Client-ID"""
    token = AuthService.create_access_token(AuthService.token_claims(user, aal))
    headers = {"Authorization": f"Bearer {token}"}
    if client_id:
        headers["X-Client-ID"] = client_id
    return headers


# ============================================================
# CLIENTS
# ============================================================

@pytest_asyncio.fixture
async def tenant(db_session):
    """Free-plan client with no MFA mandate"""
    return await make_client(db_session, "Acme Payments")


@pytest_asyncio.fixture
async def pro_tenant(db_session):
    return await make_client(db_session, "Globex Pro", plan_tier=PlanTier.PRO)


@pytest_asyncio.fixture
async def mfa_tenant(db_session):
    return await make_client(db_session, "Initech Secure", plan_tier=PlanTier.ENTERPRISE, require_mfa=True)


# ============================================================
# USERS
# ============================================================

@pytest_asyncio.fixture
async def owner_user(db_session, tenant):
    user = await make_user(db_session, "owner@acme.test", display_name="Olivia Owner")
    await add_membership(db_session, user, tenant, ClientRole.OWNER)
    return user


@pytest_asyncio.fixture
async def editor_user(db_session, tenant):
    user = await make_user(db_session, "editor@acme.test", display_name="Eddie Editor")
    await add_membership(db_session, user, tenant, ClientRole.EDITOR)
    return user


@pytest_asyncio.fixture
async def viewer_user(db_session, tenant):
    user = await make_user(db_session, "viewer@acme.test", display_name="Vera Viewer")
    await add_membership(db_session, user, tenant, ClientRole.VIEWER)
    return user


@pytest_asyncio.fixture
async def outsider(db_session):
    """Authenticated user with no memberships"""
    return await make_user(db_session, "outsider@elsewhere.test")


@pytest_asyncio.fixture
async def admin_user(db_session):
    """Platform admin (global elevated role, no memberships)"""
    return await make_user(db_session, "admin@grc.test", role=UserRole.ADMIN, display_name="Ada Admin")
