"""Chatflow FastAPI Application.

Provides REST endpoints that carry conversation turns between a chat
widget (or any other channel) and the ConversationRuntime.
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from fastapi import Body, FastAPI, Request

from chatflow.__version__ import __version__
from chatflow.config.loader import DEFAULT_SETTINGS_FILE, SettingsLoader
from chatflow.config.settings import RuntimeSettings
from chatflow.core.errors import ChatflowError
from chatflow.observability.logging import setup_logging
from chatflow.runtime.conversation import ConversationRuntime
from chatflow.runtime.messages import InboundPayload, TurnResponse
from chatflow.server.dependencies import RuntimeDep
from chatflow.server.errors import chatflow_exception_handler, global_exception_handler
from chatflow.server.models import (
    HealthResponse,
    MessageRequest,
    ReadinessResponse,
    SessionResponse,
    StartSessionRequest,
    VersionResponse,
)

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "CHATFLOW_CONFIG_PATH"


def _load_settings() -> RuntimeSettings:
    from dotenv import load_dotenv

    load_dotenv()

    config_path = os.environ.get(CONFIG_PATH_ENV)
    if not config_path and os.path.exists(DEFAULT_SETTINGS_FILE):
        config_path = DEFAULT_SETTINGS_FILE

    if not config_path:
        logger.warning(
            f"{CONFIG_PATH_ENV} not set and {DEFAULT_SETTINGS_FILE} not found. Using defaults."
        )
        return RuntimeSettings()

    logger.info(f"Loading settings from {config_path}")
    return SettingsLoader.load(config_path)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - wire the runtime on startup, close stores on shutdown."""
    if getattr(app.state, "runtime", None) is not None:
        # Runtime injected by create_app (tests, embedding)
        yield
        return

    settings = _load_settings()
    setup_logging(settings.logging.level, settings.logging.json_file)

    runtime = ConversationRuntime.from_settings(settings)
    app.state.runtime = runtime
    app.state.settings = settings
    logger.info("ConversationRuntime initialized and ready.")
    try:
        yield
    finally:
        logger.info("ConversationRuntime cleanup...")
        await runtime.close()
        app.state.runtime = None


def create_app(runtime: ConversationRuntime | None = None) -> FastAPI:
    """Build the application.

    Args:
        runtime: Ready runtime to serve; when omitted the lifespan builds one
            from CHATFLOW_CONFIG_PATH / chatflow.yaml.
    """
    app = FastAPI(
        title="Chatflow",
        description="Conversational flow interpreter for chatbot graphs",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    app.add_exception_handler(ChatflowError, chatflow_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request) -> HealthResponse:
        """Liveness probe."""
        ready = getattr(request.app.state, "runtime", None) is not None
        return HealthResponse(
            status="healthy" if ready else "starting",
            version=__version__,
            timestamp=datetime.now().isoformat(),
        )

    @app.get("/ready", response_model=ReadinessResponse)
    async def readiness_check(request: Request) -> ReadinessResponse:
        """Readiness probe."""
        if getattr(request.app.state, "runtime", None) is None:
            return ReadinessResponse(
                ready=False, message="Runtime not initialized", checks={"runtime": False}
            )
        return ReadinessResponse(ready=True, message="Service is ready", checks={"runtime": True})

    @app.get("/version", response_model=VersionResponse)
    def get_version() -> VersionResponse:
        """Get detailed version information."""
        parts = __version__.split(".")
        major = int(parts[0]) if len(parts) > 0 and parts[0].isdigit() else 0
        minor = int(parts[1]) if len(parts) > 1 and parts[1].isdigit() else 0
        patch = parts[2] if len(parts) > 2 else "0"

        return VersionResponse(version=__version__, major=major, minor=minor, patch=patch)

    @app.post("/sessions", response_model=TurnResponse, status_code=201)
    async def start_session(request: StartSessionRequest, runtime: RuntimeDep) -> TurnResponse:
        """Start a conversation and return the messages up to the first suspension."""
        return await runtime.start_conversation(
            request.flow_id,
            version=request.version,
            initial_variables=request.initial_variables,
            client=request.client,
        )

    @app.post("/sessions/{session_id}/messages", response_model=TurnResponse)
    async def send_message(
        session_id: str, request: MessageRequest, runtime: RuntimeDep
    ) -> TurnResponse:
        """Send one end-user event (text and/or button choice)."""
        inbound = InboundPayload(text=request.text, button_id=request.button_id)
        return await runtime.handle_turn(session_id, inbound, client=request.client)

    @app.get("/sessions/{session_id}", response_model=SessionResponse)
    async def get_session(session_id: str, runtime: RuntimeDep) -> SessionResponse:
        """Inspect a session: position, variables, results and transcript."""
        state = await runtime.get_session(session_id)
        return SessionResponse.from_state(state)

    @app.delete("/sessions/{session_id}", response_model=SessionResponse)
    async def end_session(session_id: str, runtime: RuntimeDep) -> SessionResponse:
        """Close a session; further messages are ignored."""
        state = await runtime.end_session(session_id)
        return SessionResponse.from_state(state)

    @app.post("/flows/{flow_id}/webhook", response_model=TurnResponse, status_code=201)
    async def trigger_webhook(
        flow_id: str,
        request: Request,
        runtime: RuntimeDep,
        payload: dict[str, Any] | None = Body(default=None),
        version: int | None = None,
    ) -> TurnResponse:
        """Start a session from an external system, right after the webhook node."""
        return await runtime.trigger_webhook(
            flow_id, payload or {}, version=version, headers=dict(request.headers)
        )

    return app


app = create_app()
