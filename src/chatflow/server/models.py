"""API Models - Pydantic models for FastAPI endpoints.

Defines request and response schemas for the Chatflow REST API. Turn
responses reuse ``chatflow.runtime.messages.TurnResponse``.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from chatflow.core.messages import ClientContext, MessageLogEntry
from chatflow.core.state import SessionState, SessionStatus


class StartSessionRequest(BaseModel):
    """Request model for starting a conversation."""

    flow_id: str = Field(min_length=1, description="Published flow to run")
    version: int | None = Field(default=None, description="Flow version; latest when omitted")
    initial_variables: dict[str, str] = Field(
        default_factory=dict, description="Variables set before the first node runs"
    )
    client: ClientContext | None = Field(default=None, description="Browser hints for scripts")


class MessageRequest(BaseModel):
    """Request model for one end-user event."""

    text: str | None = Field(default=None, description="Free-text answer")
    button_id: str | None = Field(default=None, description="Id of the chosen button")
    client: ClientContext | None = Field(default=None, description="Browser hints for scripts")


class SessionResponse(BaseModel):
    """Response model for session inspection."""

    session_id: str
    flow_id: str
    flow_version: int
    status: SessionStatus
    current_container_id: str | None
    current_node_index: int
    waiting_for: str | None
    variables: dict[str, str]
    results: dict[str, str]
    message_log: list[MessageLogEntry]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_state(cls, state: SessionState) -> "SessionResponse":
        return cls(
            session_id=state.session_id,
            flow_id=state.flow_id,
            flow_version=state.flow_version,
            status=state.status,
            current_container_id=state.current_container_id,
            current_node_index=state.current_node_index,
            waiting_for=state.waiting_for,
            variables=state.variables,
            results=state.results,
            message_log=state.message_log,
            created_at=state.created_at,
            updated_at=state.updated_at,
        )


class HealthResponse(BaseModel):
    """Liveness response."""

    status: Literal["healthy", "starting"]
    version: str
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())


class ReadinessResponse(BaseModel):
    """Readiness probe response."""

    ready: bool
    message: str
    checks: dict[str, bool] | None = None


class VersionResponse(BaseModel):
    """Response model for version endpoint."""

    version: str = Field(description="Full version string")
    major: int = Field(description="Major version number")
    minor: int = Field(description="Minor version number")
    patch: str = Field(description="Patch version (may include suffix)")
