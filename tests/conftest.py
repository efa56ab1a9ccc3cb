"""Test configuration and fixtures for berryorm."""

from dotenv import load_dotenv
import pytest
import asyncio
import os
import sys
from typing import List

from sqlalchemy import event

from berryorm.database import Database
from berryorm.registry import ModelRegistry

# Try to load environment variables from .env file
load_dotenv()


@pytest.fixture(scope="session", autouse=True)
def event_loop_policy():
    """Set event loop policy for Windows compatibility."""
    if sys.platform.startswith("win"):
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
    yield


@pytest.fixture(scope="function")
async def database(tmp_path):
    """A database per test: BERRYORM_TEST_DATABASE_URL, or a file backed SQLite.

    A file (not ``:memory:``) is used so separate connections share the data
    and uncommitted transaction state stays invisible to other connections.
    """
    url = os.getenv('BERRYORM_TEST_DATABASE_URL')
    if not url:
        url = f"sqlite+aiosqlite:///{tmp_path / 'berryorm.db'}"
    db = Database(url, echo=False)
    yield db
    await db.dispose()


@pytest.fixture(scope="function")
def registry(database):
    return ModelRegistry(database)


@pytest.fixture(scope="function")
def statements(database):
    """Capture every statement sent to the driver."""
    captured: List[str] = []
    engine = database.engine.sync_engine

    def _capture(conn, cursor, statement, parameters, context, executemany):  # noqa: ANN001
        captured.append(str(statement))

    event.listen(engine, "before_cursor_execute", _capture)
    try:
        yield captured
    finally:
        event.remove(engine, "before_cursor_execute", _capture)
