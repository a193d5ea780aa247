"""Core interpreter errors."""

from typing import Any


class ChatflowError(Exception):
    """Base class for all Chatflow errors."""

    def __init__(self, message: str = "", context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context: dict[str, Any] = context or {}


class ConfigError(ChatflowError):
    """Raised when configuration is invalid."""


class GraphIntegrityError(ChatflowError):
    """Raised when a container, node or edge referenced by the flow cannot be resolved.

    Fatal for the current turn: nothing is persisted.
    """


class FlowValidationError(ChatflowError):
    """Raised when a flow definition is rejected at publish time."""

    def __init__(self, message: str, issues: list[Any] | None = None) -> None:
        super().__init__(message, context={"issues": issues or []})
        self.issues = issues or []


class ValidationError(ChatflowError):
    """Raised when an end-user answer fails typed validation.

    The engine catches it and re-prompts, so it never ends a turn.
    """


class ScriptExecutionError(ChatflowError):
    """Raised when an operator script fails."""

    pass


class ScriptTimeoutError(ScriptExecutionError):
    """Script exceeded its wall-clock budget."""

    pass


class ScriptPolicyError(ScriptExecutionError):
    """Script uses a construct the sandbox does not allow."""

    pass


class StorageError(ChatflowError):
    """Raised when the persistence layer fails to load or save."""

    pass


class StaleSessionError(StorageError):
    """Session was modified by another turn since it was loaded."""

    pass


class SessionNotFoundError(StorageError):
    """Requested session does not exist."""

    pass


class FlowNotFoundError(StorageError):
    """Requested flow (or flow version) does not exist."""

    pass


class WebhookError(ChatflowError):
    """Raised when a flow cannot be started through its webhook."""

    pass


class WebhookAuthError(WebhookError):
    """Webhook request did not carry the credentials the webhook node requires."""

    pass
