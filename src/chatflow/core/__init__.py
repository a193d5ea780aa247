"""Core building blocks: errors, variables, conditions, validation and session state."""

from chatflow.core.errors import (
    ChatflowError,
    ConfigError,
    FlowNotFoundError,
    FlowValidationError,
    GraphIntegrityError,
    ScriptExecutionError,
    ScriptPolicyError,
    ScriptTimeoutError,
    SessionNotFoundError,
    StaleSessionError,
    StorageError,
    ValidationError,
    WebhookAuthError,
    WebhookError,
)
from chatflow.core.state import SessionState, SessionStatus, create_session_state
from chatflow.core.variables import VariableStore

__all__ = [
    "ChatflowError",
    "ConfigError",
    "FlowNotFoundError",
    "FlowValidationError",
    "GraphIntegrityError",
    "ScriptExecutionError",
    "ScriptPolicyError",
    "ScriptTimeoutError",
    "SessionNotFoundError",
    "StaleSessionError",
    "StorageError",
    "ValidationError",
    "WebhookAuthError",
    "WebhookError",
    "SessionState",
    "SessionStatus",
    "create_session_state",
    "VariableStore",
]
