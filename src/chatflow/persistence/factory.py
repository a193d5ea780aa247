"""Build storage backends from settings."""

import logging

from chatflow.config.settings import FlowSettings, PersistenceSettings
from chatflow.core.errors import ConfigError
from chatflow.persistence.base import FlowRepository, SessionStore
from chatflow.persistence.files import FileFlowRepository
from chatflow.persistence.memory import InMemoryFlowRepository, InMemorySessionStore
from chatflow.persistence.sqlite import SqliteSessionStore

logger = logging.getLogger(__name__)


class StorageFactory:
    """Factory for session stores and flow repositories.

    Each backend has its own creation method; adding one means adding a
    method and a branch, not changing the callers.
    """

    @staticmethod
    def create_session_store(settings: PersistenceSettings) -> SessionStore:
        """
        Create the session store selected by ``settings.backend``.

        Raises:
            ConfigError: If the backend is unsupported
        """
        backend = settings.backend
        if backend == "sqlite":
            return StorageFactory._create_sqlite_store(settings)
        elif backend == "memory":
            return InMemorySessionStore()
        raise ConfigError(f"Unsupported persistence backend: {backend}")

    @staticmethod
    def _create_sqlite_store(settings: PersistenceSettings) -> SessionStore:
        logger.info(f"Using SQLite session store at {settings.path}")
        return SqliteSessionStore(settings.path)

    @staticmethod
    def create_flow_repository(settings: FlowSettings) -> FlowRepository:
        """File repository when a directory is configured, else an empty in-memory one."""
        if settings.directory:
            return FileFlowRepository(
                settings.directory,
                cache_size=settings.cache_size,
                cache_ttl=settings.cache_ttl,
            )
        logger.warning("No flow directory configured; flows must be published in memory")
        return InMemoryFlowRepository()


def create_session_store(settings: PersistenceSettings) -> SessionStore:
    return StorageFactory.create_session_store(settings)


def create_flow_repository(settings: FlowSettings) -> FlowRepository:
    return StorageFactory.create_flow_repository(settings)
