import asyncio
import os
import uuid

import pytest

# settings are read at import time
os.environ.setdefault("SECRET", "test-secret-for-the-suite-only")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RUN_DB_CREATE_ALL", "false")

from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from healthtimeline.blobstore import LocalBlobStore  # noqa: E402
from healthtimeline.database import Base  # noqa: E402
from healthtimeline.models import User  # noqa: E402


@pytest.fixture
def session_maker(tmp_path):
    """A fresh SQLite file database per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'timeline.db'}", poolclass=NullPool)

    # take the write lock at BEGIN so concurrent sessions queue on the busy
    # timeout instead of failing a lock upgrade
    @event.listens_for(engine.sync_engine, "connect")
    def _no_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async def _create():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(_create())
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    asyncio.run(engine.dispose())


@pytest.fixture
def blobs(tmp_path):
    return LocalBlobStore(tmp_path / "blobs")


async def make_user(session_maker, email: str) -> uuid.UUID:
    async with session_maker() as db:
        user = User(email=email, hashed_password="not-a-real-hash")
        db.add(user)
        await db.commit()
        return user.id


@pytest.fixture
def alice(session_maker):
    return asyncio.run(make_user(session_maker, "alice@example.com"))


@pytest.fixture
def bob(session_maker):
    return asyncio.run(make_user(session_maker, "bob@example.com"))
