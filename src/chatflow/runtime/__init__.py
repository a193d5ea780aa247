"""Session execution engine and conversation runtime."""

from chatflow.runtime.conversation import ConversationRuntime, create_error_reference
from chatflow.runtime.engine import SessionEngine, TurnResult
from chatflow.runtime.messages import InboundPayload, TurnResponse

__all__ = [
    "ConversationRuntime",
    "create_error_reference",
    "SessionEngine",
    "TurnResult",
    "InboundPayload",
    "TurnResponse",
]
