"""Chatflow - conversational flow interpreter for chatbot graphs.

A flow is a graph of containers (ordered node lists) joined by edges. The
interpreter walks it one turn at a time, suspending whenever it needs an
answer from the end user, and keeps all per-conversation state in a
durable SessionState.

Quick start:
    from chatflow import ConversationRuntime, InboundPayload
    from chatflow.flow import FlowLoader
    from chatflow.persistence import InMemoryFlowRepository, InMemorySessionStore

    flows = InMemoryFlowRepository([FlowLoader.load("examples/booking/flows/booking.yaml")])
    runtime = ConversationRuntime(flows, InMemorySessionStore())

    response = await runtime.start_conversation("booking")
    response = await runtime.handle_turn(response.session_id, InboundPayload(text="Ana"))
"""

from chatflow.__version__ import __version__
from chatflow.core.errors import (
    ChatflowError,
    ConfigError,
    FlowValidationError,
    GraphIntegrityError,
    ScriptExecutionError,
    StorageError,
    ValidationError,
)
from chatflow.core.state import SessionState, SessionStatus
from chatflow.core.variables import VariableStore
from chatflow.flow.graph import FlowGraph
from chatflow.flow.models import FlowDefinition
from chatflow.runtime.conversation import ConversationRuntime
from chatflow.runtime.engine import SessionEngine, TurnResult
from chatflow.runtime.messages import InboundPayload, TurnResponse
from chatflow.script.sandbox import ScriptSandbox

__all__ = [
    # Version info
    "__version__",
    # Runtime
    "ConversationRuntime",
    "SessionEngine",
    "TurnResult",
    "InboundPayload",
    "TurnResponse",
    "ScriptSandbox",
    # Model
    "FlowDefinition",
    "FlowGraph",
    "SessionState",
    "SessionStatus",
    "VariableStore",
    # Errors
    "ChatflowError",
    "ConfigError",
    "FlowValidationError",
    "GraphIntegrityError",
    "ScriptExecutionError",
    "StorageError",
    "ValidationError",
]
