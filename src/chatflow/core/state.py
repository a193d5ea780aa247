"""Durable per-conversation session state."""

import logging
import uuid
from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from chatflow.core.messages import ButtonOption, MessageLogEntry
from chatflow.core.variables import strip_token

logger = logging.getLogger(__name__)

WAITING_FOR_BUTTONS = "buttons"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ENDED = "ended"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionState(BaseModel):
    """Position and variables of one end user's run through a flow.

    ``waiting_for`` is the input node type (or "buttons") whose answer the
    next inbound event will be treated as; None means the engine is not
    waiting for an answer.
    """

    session_id: str
    flow_id: str
    flow_version: int
    current_container_id: str | None = None
    current_node_index: int = 0
    variables: dict[str, str] = Field(default_factory=dict)
    results: dict[str, str] = Field(default_factory=dict)
    message_log: list[MessageLogEntry] = Field(default_factory=list)
    waiting_for: str | None = None
    waiting_node_id: str | None = None
    pending_buttons: list[ButtonOption] = Field(default_factory=list)
    status: SessionStatus = SessionStatus.ACTIVE
    version: int = Field(default=0, description="Optimistic concurrency counter")
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    @property
    def is_suspended_on_input(self) -> bool:
        return self.waiting_for is not None


def create_session_state(
    flow_id: str,
    flow_version: int,
    start_container_id: str,
    session_id: str | None = None,
    variables: dict[str, Any] | None = None,
) -> SessionState:
    """Create a fresh session positioned at the start container."""
    return SessionState(
        session_id=session_id or str(uuid.uuid4()),
        flow_id=flow_id,
        flow_version=flow_version,
        current_container_id=start_container_id,
        current_node_index=0,
        variables=session_variables(variables),
    )


def session_variables(values: Mapping[str, Any] | None) -> dict[str, str]:
    """String copy of variables supplied from outside the flow.

    Names go through the same "{{name}}" stripping as flow-authored names.
    Names that end up blank cannot be stored and are dropped with a warning.
    """
    variables: dict[str, str] = {}
    for key, value in (values or {}).items():
        name = strip_token(str(key))
        if not name:
            logger.warning(f"Dropping variable with a blank name: {key!r}")
            continue
        variables[name] = "" if value is None else str(value)
    return variables
