"""
Shared fixtures.

The environment is configured before any minicrm import so the cached
settings and the module-level engine point at a throwaway SQLite file.
"""

import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="minicrm-tests-")

os.environ["SECRET_KEY"] = "test-secret-key-for-testing-only"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/minicrm_test.db"
os.environ["QUEUE_BACKEND"] = "memory"
os.environ["RUN_WORKER_IN_PROCESS"] = "false"
os.environ["DEBUG"] = "true"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["VENDOR_MIN_DELAY_SECONDS"] = "0"
os.environ["VENDOR_MAX_DELAY_SECONDS"] = "0"

from decimal import Decimal

import pytest
from httpx import AsyncClient, ASGITransport

from minicrm.auth_middleware import create_access_token
from minicrm.database import engine, async_session_maker
from minicrm.models import Base, Customer
from minicrm.orchestration import QueueSet, QUEUE_NAMES, set_queues
from minicrm.task_queue import InMemoryTaskQueue

TEST_USER = "user-123"


@pytest.fixture
async def db():
    """Fresh schema per test."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield async_session_maker
    await engine.dispose()


@pytest.fixture
def queues():
    queue_set = QueueSet({name: InMemoryTaskQueue(name, max_attempts=3) for name in QUEUE_NAMES})
    set_queues(queue_set)
    yield queue_set
    set_queues(None)


@pytest.fixture
async def client(db, queues):
    from minicrm.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {create_access_token(TEST_USER)}"}


@pytest.fixture
def make_customer():
    """Transient (unsaved) customer for in-memory predicate checks."""
    def _make(customer_id="c1", **fields):
        tags = fields.pop("tags", [])
        fields.setdefault("total_spends", Decimal("0"))
        fields.setdefault("visits", 0)
        customer = Customer(id=customer_id, **fields)
        customer.tags = tags
        return customer
    return _make


@pytest.fixture
def seed_customers(db):
    """Insert customers given as dicts of column values; returns their ids."""
    async def _seed(*rows):
        async with async_session_maker() as session:
            for row in rows:
                row = dict(row)
                tags = row.pop("tags", [])
                row.setdefault("total_spends", Decimal("0"))
                row.setdefault("visits", 0)
                customer = Customer(**row)
                customer.tags = tags
                session.add(customer)
            await session.commit()
        return [row["id"] for row in rows]
    return _seed
