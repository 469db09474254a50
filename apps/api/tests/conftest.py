import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db
from main import app
from models.user import User
from routers import rate_limit
from services import image_generation, sweeper, task_notifier, tasks, ttl_store
from services.session_token import create_session_token


USER_A = "user-a"
USER_B = "user-b"
INTERNAL_SECRET = "internal-test-secret"
ADMIN_SECRET = "admin-test-secret"
ADMIN_OVERRIDE = "override-test-key"
ZPAY_KEY = "zpay-test-key"


def auth_header(user_id: str, email: str = None) -> dict:
    token = create_session_token(user_id, email or f"{user_id}@example.com")["token"]
    return {"Authorization": f"Bearer {token}"}


INTERNAL_HEADER = {"x-internal-secret": INTERNAL_SECRET}
ADMIN_HEADER = {"Authorization": f"Bearer {ADMIN_SECRET}"}


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    """Run every test without Redis, with fixed secrets and fresh in-memory state."""
    monkeypatch.setattr(settings, "REDIS_ENABLED", False)
    monkeypatch.setattr(settings, "TASK_PROCESS_SECRET_KEY", INTERNAL_SECRET)
    monkeypatch.setattr(settings, "ADMIN_API_SECRET_KEY", ADMIN_SECRET)
    monkeypatch.setattr(settings, "ADMIN_OVERRIDE_KEY", ADMIN_OVERRIDE)
    monkeypatch.setattr(settings, "ZPAY_PID", "1001")
    monkeypatch.setattr(settings, "ZPAY_KEY", ZPAY_KEY)
    monkeypatch.setattr(settings, "MOCK_PAYMENT_SUCCESS", False)
    monkeypatch.setattr(settings, "DEFAULT_CREDIT_GRANT", 5)
    monkeypatch.setattr(settings, "TASK_CREDIT_COST", 1)
    monkeypatch.setattr(settings, "SITE_BASE_URL", "https://images.example.com")

    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit.reset_local_counters()
    ttl_store.clear_local()
    task_notifier.task_notifier._subscriptions.clear()
    yield
    rate_limit.reset_local_counters()
    ttl_store.clear_local()
    task_notifier.task_notifier._subscriptions.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path, monkeypatch):
    db_path = tmp_path / "ai_image_creator.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with maker() as session:
        session.add_all(
            [
                User(id=USER_A, email=f"{USER_A}@example.com"),
                User(id=USER_B, email=f"{USER_B}@example.com"),
            ]
        )
        await session.commit()

    # Services that open their own sessions.
    monkeypatch.setattr(tasks, "async_session_maker", maker)
    monkeypatch.setattr(sweeper, "async_session_maker", maker)
    monkeypatch.setattr(image_generation, "async_session_maker", maker)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client
    app.dependency_overrides.pop(get_db, None)
