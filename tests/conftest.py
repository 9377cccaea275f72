import os
import uuid
from collections.abc import AsyncGenerator, Iterator
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from profile_onboarding.core.config import settings
from profile_onboarding.core.enums import ProfileRole
from profile_onboarding.models.base import Base
from profile_onboarding.services.completion_coordinator import CompletionCoordinator
from profile_onboarding.services.pending_sync_reconciler import PendingSyncReconciler
from profile_onboarding.services.session_guard import reset_identity_locks
from profile_onboarding.services.step_controller import StepController

# Optional external database (e.g. a PostgreSQL test database). Defaults to a
# throwaway SQLite file per test.
TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL")

# Test identity IDs (consistent across tests for predictable auth)
TEST_IDENTITY_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
OTHER_IDENTITY_ID = uuid.UUID("00000000-0000-0000-0000-000000000002")
TEST_EMAIL = "Jane.Doe@Example.com"

# Security: This is a test-only secret. Production uses a real secret from env.
TEST_AUTH_SECRET = "test-secret-key-that-is-at-least-32-characters-long"  # nosec B105  # gitleaks:allow


def create_test_jwt(
    identity_id: uuid.UUID = TEST_IDENTITY_ID,
    *,
    secret: str = TEST_AUTH_SECRET,
    email: str | None = TEST_EMAIL,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a signed JWT for test authentication.

    Args:
        identity_id: Identity UUID to encode in the sub claim.
        secret: Signing secret (must match settings.auth_secret in tests).
        email: Optional email claim.
        expires_delta: Time until expiration. Defaults to 1 hour.

    Returns:
        Encoded JWT string.
    """
    now = datetime.now(UTC)
    payload: dict[str, Any] = {
        "sub": str(identity_id),
        "aud": "profile-onboarding",
        "iss": "profile-onboarding",
        "exp": now + (expires_delta or timedelta(hours=1)),
        "iat": now,
    }
    if email is not None:
        payload["email"] = email
    return jwt.encode(payload, secret, algorithm="HS256")


# =============================================================================
# Valid step payloads
# =============================================================================


def valid_base_values(**overrides: Any) -> dict[str, Any]:
    """BasicInfo values that pass the registry."""
    values: dict[str, Any] = {
        "full_name": "Jane Doe",
        "country": "Zambia",
        "city": "Lusaka",
        "bio": "Agribusiness founder working with smallholder farmers.",
        "phone": "0971234567",
    }
    values.update(overrides)
    return values


_VALID_EXTENSIONS: dict[ProfileRole, dict[str, Any]] = {
    ProfileRole.BUSINESS: {
        "business_name": "Jane Co",
        "industry": "Agriculture",
        "business_stage": "growth",
        "services_or_products": "Maize milling and distribution",
        "top_needs": ["Funding", "Market Access"],
        "areas_served": ["Lusaka"],
    },
    ProfileRole.PROFESSIONAL: {
        "professional_title": "Data Analyst",
        "primary_skills": ["SQL", "Python"],
        "services_offered": "Dashboards and reporting for SMEs",
        "experience_level": "senior",
        "availability": "available",
        "work_mode": "remote",
        "rate_type": "daily",
        "rate_range": "ZMW 1500-2500",
    },
    ProfileRole.CAPITAL_PROVIDER: {
        "provider_type": "angel",
        "ticket_size_range": "USD 10k-50k",
        "investment_stage_focus": ["Seed"],
        "sectors_of_interest": ["Agriculture"],
        "investment_preferences": ["Equity"],
        "geo_focus": ["Zambia"],
    },
    ProfileRole.INSTITUTION: {
        "institution_name": "Ministry of Commerce",
        "department_or_unit": "SME Development",
        "institution_type": "ministry",
        "mandate_areas": ["Trade"],
        "services_or_programmes": "Grants and mentorship for SMEs",
        "collaboration_interests": ["Training"],
        "contact_person_title": "Director",
    },
}


def valid_extension_values(role: ProfileRole, **overrides: Any) -> dict[str, Any]:
    """RoleDetails values that pass the registry for ``role``."""
    values = dict(_VALID_EXTENSIONS[role])
    values.update(overrides)
    return values


# =============================================================================
# Database fixtures
# =============================================================================


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path):
    """Create a test database engine with the full schema."""
    url = TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'onboarding.db'}"
    engine = create_async_engine(url, echo=False)
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(autouse=True)
def _reset_identity_locks():
    """Each test starts with an empty lock registry."""
    reset_identity_locks()
    yield
    reset_identity_locks()


@pytest.fixture(autouse=True)
def disable_rate_limiting() -> Iterator[None]:
    """Disable rate limiting during tests.

    Yields:
        None (autouse fixture).
    """
    from profile_onboarding.core.rate_limiting import limiter

    original_enabled = limiter.enabled
    limiter.enabled = False

    yield

    limiter.enabled = original_enabled


# =============================================================================
# API client fixtures
# =============================================================================


def _override_dependencies(session_factory: async_sessionmaker[AsyncSession]):
    """Point the app's DB and controller dependencies at the test database."""
    from profile_onboarding.api.deps import get_step_controller
    from profile_onboarding.core.database import get_db
    from profile_onboarding.main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    def override_get_step_controller() -> StepController:
        coordinator = CompletionCoordinator(
            session_factory, degraded_mode_enabled=settings.degraded_mode_enabled
        )
        reconciler = PendingSyncReconciler(
            session_factory, max_attempts=settings.pending_sync_max_attempts
        )
        return StepController(session_factory, coordinator, reconciler=reconciler)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_step_controller] = override_get_step_controller
    return app


@pytest_asyncio.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client authenticated as TEST_IDENTITY_ID.

    Enables auth_enabled=True and injects a valid JWT cookie.

    Yields:
        Configured AsyncClient for making authenticated API requests.
    """
    app = _override_dependencies(session_factory)

    original_auth_enabled = settings.auth_enabled
    original_auth_secret = settings.auth_secret
    settings.auth_enabled = True
    settings.auth_secret = SecretStr(TEST_AUTH_SECRET)

    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        cookies={settings.auth_cookie_name: create_test_jwt(TEST_IDENTITY_ID)},
    ) as ac:
        yield ac

    settings.auth_enabled = original_auth_enabled
    settings.auth_secret = original_auth_secret
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def unauthenticated_client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client without a session cookie (auth enabled).

    Yields:
        AsyncClient with no auth cookie.
    """
    app = _override_dependencies(session_factory)

    original_auth_enabled = settings.auth_enabled
    original_auth_secret = settings.auth_secret
    settings.auth_enabled = True
    settings.auth_secret = SecretStr(TEST_AUTH_SECRET)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    settings.auth_enabled = original_auth_enabled
    settings.auth_secret = original_auth_secret
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def other_client(client) -> AsyncGenerator[AsyncClient, None]:  # noqa: ARG001
    """HTTP client authenticated as OTHER_IDENTITY_ID.

    Depends on ``client`` so the dependency overrides and auth settings
    are already in place.

    Yields:
        AsyncClient authenticated as the second identity.
    """
    from profile_onboarding.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        cookies={settings.auth_cookie_name: create_test_jwt(OTHER_IDENTITY_ID)},
    ) as ac:
        yield ac
