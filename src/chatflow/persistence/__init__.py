"""Flow repositories and session stores."""

from chatflow.persistence.base import FlowRepository, SessionStore
from chatflow.persistence.factory import (
    StorageFactory,
    create_flow_repository,
    create_session_store,
)
from chatflow.persistence.files import FileFlowRepository
from chatflow.persistence.memory import InMemoryFlowRepository, InMemorySessionStore
from chatflow.persistence.sqlite import SqliteSessionStore

__all__ = [
    "FlowRepository",
    "SessionStore",
    "StorageFactory",
    "create_flow_repository",
    "create_session_store",
    "FileFlowRepository",
    "InMemoryFlowRepository",
    "InMemorySessionStore",
    "SqliteSessionStore",
]
