"""Integration test configuration.

Scenarios run the whole stack: flows read from YAML files, sessions kept in
SQLite, turns handled by the ConversationRuntime.
"""

from pathlib import Path

import pytest_asyncio

from chatflow.persistence.files import FileFlowRepository
from chatflow.persistence.sqlite import SqliteSessionStore
from chatflow.runtime.conversation import ConversationRuntime

EXAMPLE_FLOWS = Path(__file__).parents[2] / "examples" / "booking" / "flows"


@pytest_asyncio.fixture
async def booking_runtime(tmp_path, engine):
    """Runtime serving the bundled booking example from disk."""
    runtime = ConversationRuntime(
        FileFlowRepository(EXAMPLE_FLOWS),
        SqliteSessionStore(tmp_path / "sessions.db"),
        engine=engine,
    )
    yield runtime
    await runtime.close()
