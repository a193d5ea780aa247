"""Storage interfaces consumed by the conversation runtime."""

from abc import ABC, abstractmethod

from chatflow.core.state import SessionState
from chatflow.flow.models import FlowDefinition


class FlowRepository(ABC):
    """Source of published flow definitions."""

    @abstractmethod
    async def load(self, flow_id: str, version: int | None = None) -> FlowDefinition:
        """Load a flow version; None selects the latest.

        Raises:
            FlowNotFoundError: If the flow or version does not exist
        """

    async def close(self) -> None:
        """Release resources held by the repository."""
        return None


class SessionStore(ABC):
    """Durable storage for session state with optimistic versioning.

    ``SessionState.version`` is owned by the store: ``create`` writes
    version 0 and every successful ``save`` increments it.
    """

    @abstractmethod
    async def create(self, state: SessionState) -> SessionState:
        """Store a new session.

        Raises:
            StorageError: If a session with the same id already exists
        """

    @abstractmethod
    async def load(self, session_id: str) -> SessionState:
        """Load a session.

        Raises:
            SessionNotFoundError: If no such session exists
        """

    @abstractmethod
    async def save(self, state: SessionState, expected_version: int) -> SessionState:
        """Replace a session if its stored version still equals expected_version.

        Returns:
            The saved state, carrying its new version

        Raises:
            StaleSessionError: If another turn saved the session first
            SessionNotFoundError: If the session does not exist
        """

    async def close(self) -> None:
        """Release resources held by the store."""
        return None
