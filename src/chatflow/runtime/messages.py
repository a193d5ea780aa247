"""Inbound and outbound records of one conversation turn."""

from pydantic import BaseModel, Field

from chatflow.core.messages import ButtonOption, OutboundMessage, SideEffects
from chatflow.core.state import SessionStatus


class InboundPayload(BaseModel):
    """What the end user sent: free text, a button choice, or both."""

    text: str | None = None
    button_id: str | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.text or "").strip() and not self.button_id


class TurnResponse(BaseModel):
    """Everything the transport needs to render one turn."""

    session_id: str
    messages: list[OutboundMessage] = Field(default_factory=list)
    waiting_for: str | None = None
    buttons: list[ButtonOption] = Field(default_factory=list)
    placeholder: str | None = None
    side_effects: SideEffects | None = None
    status: SessionStatus = SessionStatus.ACTIVE
    error_reference: str | None = Field(
        default=None, description="Set when the turn failed; correlates with server logs"
    )
