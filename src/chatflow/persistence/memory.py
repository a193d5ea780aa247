"""In-memory flow repository and session store.

Used by tests, the interactive ``chatflow chat`` command and single-process
deployments that do not need sessions to survive a restart.
"""

import asyncio
import logging

from chatflow.core.errors import (
    ConfigError,
    FlowNotFoundError,
    SessionNotFoundError,
    StaleSessionError,
    StorageError,
)
from chatflow.core.state import SessionState
from chatflow.flow.graph import ensure_valid
from chatflow.flow.models import FlowDefinition
from chatflow.persistence.base import FlowRepository, SessionStore

logger = logging.getLogger(__name__)


class InMemoryFlowRepository(FlowRepository):
    """Published flow versions kept in a dict."""

    def __init__(self, definitions: list[FlowDefinition] | None = None) -> None:
        self._flows: dict[str, dict[int, FlowDefinition]] = {}
        for definition in definitions or []:
            self.publish(definition)

    def publish(self, definition: FlowDefinition) -> None:
        """Validate and store a flow version.

        Raises:
            FlowValidationError: If the flow has errors (dangling or ambiguous edges...)
            ConfigError: If the same version was already published with other content
        """
        ensure_valid(definition)
        versions = self._flows.setdefault(definition.id, {})
        existing = versions.get(definition.version)
        if existing is not None and existing != definition:
            raise ConfigError(
                f"Flow '{definition.id}' v{definition.version} is already published"
            )
        versions[definition.version] = definition
        logger.info(
            f"Published flow '{definition.id}' v{definition.version}",
            extra={"flow_id": definition.id, "flow_version": definition.version},
        )

    async def load(self, flow_id: str, version: int | None = None) -> FlowDefinition:
        versions = self._flows.get(flow_id)
        if not versions:
            raise FlowNotFoundError(f"Flow '{flow_id}' not found", context={"flow_id": flow_id})
        if version is None:
            return versions[max(versions)]
        if version not in versions:
            raise FlowNotFoundError(
                f"Flow '{flow_id}' has no version {version}",
                context={"flow_id": flow_id, "flow_version": version},
            )
        return versions[version]


class InMemorySessionStore(SessionStore):
    """Sessions serialized to JSON in a dict, guarded by an asyncio lock.

    Storing JSON instead of the model keeps callers from mutating stored
    state through a shared reference.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def create(self, state: SessionState) -> SessionState:
        async with self._lock:
            if state.session_id in self._sessions:
                raise StorageError(f"Session '{state.session_id}' already exists")
            stored = state.model_copy(update={"version": 0})
            self._sessions[state.session_id] = stored.model_dump_json()
            return stored

    async def load(self, session_id: str) -> SessionState:
        async with self._lock:
            data = self._sessions.get(session_id)
        if data is None:
            raise SessionNotFoundError(
                f"Session '{session_id}' not found", context={"session_id": session_id}
            )
        return SessionState.model_validate_json(data)

    async def save(self, state: SessionState, expected_version: int) -> SessionState:
        async with self._lock:
            data = self._sessions.get(state.session_id)
            if data is None:
                raise SessionNotFoundError(
                    f"Session '{state.session_id}' not found",
                    context={"session_id": state.session_id},
                )
            current = SessionState.model_validate_json(data)
            if current.version != expected_version:
                raise StaleSessionError(
                    f"Session '{state.session_id}' is at version {current.version}, "
                    f"expected {expected_version}",
                    context={"session_id": state.session_id},
                )
            stored = state.model_copy(update={"version": expected_version + 1})
            self._sessions[state.session_id] = stored.model_dump_json()
            return stored

    def __len__(self) -> int:
        return len(self._sessions)
