from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from app.core.database import Base
from app import models  # noqa: F401  registers tables
from app.models.user import User
from app.models.client import Client
from app.utils.dates import utcnow


class FakeClock:
    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_user(db):
    async def _make_user(email, name=None):
        user = User(email=email, name=name, hashed_password="not-a-real-hash")
        db.add(user)
        await db.commit()
        await db.refresh(user)
        # Detached, so a service-side rollback cannot expire it
        db.expunge(user)
        return user
    return _make_user


@pytest.fixture
def make_client(db):
    async def _make_client(owner, name="Acme Corp"):
        client = Client(user_id=owner.id, name=name)
        db.add(client)
        await db.commit()
        await db.refresh(client)
        db.expunge(client)
        return client
    return _make_client
