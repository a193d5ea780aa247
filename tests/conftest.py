"""Shared fixtures for Chatflow tests.

Engines and runtimes use a FixedValueProvider so timestamps and random
tokens are deterministic.
"""

import logging

import pytest

from chatflow.config.settings import EngineSettings
from chatflow.core.values import FixedValueProvider
from chatflow.persistence.memory import InMemoryFlowRepository, InMemorySessionStore
from chatflow.runtime.conversation import ConversationRuntime
from chatflow.runtime.engine import SessionEngine
from chatflow.script.sandbox import ScriptSandbox
from tests.factories import FIXED_NOW


@pytest.fixture(autouse=True)
def reset_chatflow_logger():
    """Undo setup_logging so caplog keeps seeing chatflow records."""
    yield
    logger = logging.getLogger("chatflow")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def values() -> FixedValueProvider:
    """Clock pinned to 2024-05-17T10:30:00Z, random token 'abc123'."""
    return FixedValueProvider(FIXED_NOW)


@pytest.fixture
def engine(values) -> SessionEngine:
    return SessionEngine(sandbox=ScriptSandbox(timeout_ms=500), values=values)


@pytest.fixture
def retry_engine(values) -> SessionEngine:
    """Engine whose failing scripts keep the cursor on the script node."""
    return SessionEngine(
        sandbox=ScriptSandbox(timeout_ms=500),
        values=values,
        settings=EngineSettings(script_failure_policy="retry"),
    )


@pytest.fixture
def flow_repository() -> InMemoryFlowRepository:
    return InMemoryFlowRepository()


@pytest.fixture
def session_store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def runtime(flow_repository, session_store, engine) -> ConversationRuntime:
    """Runtime on in-memory stores; publish flows through ``runtime.flows.publish``."""
    return ConversationRuntime(flow_repository, session_store, engine=engine)
