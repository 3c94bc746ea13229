import asyncio
import json
import os
import tempfile
import uuid

# Must be set before bulk_data.config is imported
DB_PATH = os.path.join(tempfile.gettempdir(), f"bulk_data_test_{os.getpid()}.db")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{DB_PATH}"
os.environ["PROGRESS_SUBSCRIBER_ENABLED"] = "false"
os.environ["DEFAULT_WAIT_TIME"] = "0"
os.environ["BASE_URL"] = "http://testserver"

import pytest
from sqlalchemy import delete, insert

from bulk_data.database import Base, async_session, engine
from bulk_data.models import DataRow


def make_resource(resource_type="Patient", **extra):
    resource = {"resourceType": resource_type, "id": str(uuid.uuid4())}
    resource.update(extra)
    return resource


def make_rows(count, resource_type="Patient"):
    return [
        {"resource_json": json.dumps(make_resource(resource_type)), "fhir_type": resource_type}
        for _ in range(count)
    ]


async def _create_tables():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()


async def _clear_tables():
    async with async_session() as session:
        await session.execute(delete(DataRow))
        await session.commit()
    await engine.dispose()


async def _insert_rows(rows):
    async with async_session() as session:
        await session.execute(insert(DataRow), rows)
        await session.commit()
    await engine.dispose()


@pytest.fixture(scope="session", autouse=True)
def database():
    asyncio.run(_create_tables())
    yield
    if os.path.exists(DB_PATH):
        os.remove(DB_PATH)


@pytest.fixture
def seed():
    """Insert rows into the data table; the table is emptied afterwards."""
    def insert_rows(rows):
        asyncio.run(_insert_rows(rows))
        return rows

    yield insert_rows
    asyncio.run(_clear_tables())


@pytest.fixture
async def db_rows():
    """Async flavour of `seed` for tests running inside the event loop."""
    async def insert_rows(rows):
        async with async_session() as session:
            await session.execute(insert(DataRow), rows)
            await session.commit()
        return rows

    yield insert_rows
    async with async_session() as session:
        await session.execute(delete(DataRow))
        await session.commit()
    await engine.dispose()
