"""Chatflow Server Module.

Provides the FastAPI-based REST transport for conversations.
"""

from chatflow.server.api import app, create_app
from chatflow.server.models import (
    HealthResponse,
    MessageRequest,
    SessionResponse,
    StartSessionRequest,
)

__all__ = [
    "app",
    "create_app",
    "HealthResponse",
    "MessageRequest",
    "SessionResponse",
    "StartSessionRequest",
]
