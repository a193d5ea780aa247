"""Conversation runtime: the transport-facing side of the interpreter.

Each call loads what it needs from the repositories, runs the engine in a
worker thread (scripts are CPU-bound and time-limited per thread) and saves
the resulting state with an optimistic version check. A turn that fails
with a ChatflowError saves nothing; the end user gets a generic message and
an error reference, and the same request can be retried.
"""

import asyncio
import base64
import binascii
import json
import logging
import secrets
import uuid
from collections.abc import Callable, Mapping
from typing import Any

from cachetools import LRUCache

from chatflow.config.settings import RuntimeSettings
from chatflow.core.errors import ChatflowError, WebhookAuthError, WebhookError
from chatflow.core.messages import ClientContext, TextMessage
from chatflow.core.state import SessionState, SessionStatus, create_session_state
from chatflow.core.values import ValueProvider
from chatflow.flow.graph import FlowGraph
from chatflow.flow.models import WebhookConfig, WebhookNode
from chatflow.persistence.base import FlowRepository, SessionStore
from chatflow.persistence.factory import create_flow_repository, create_session_store
from chatflow.runtime.engine import SessionEngine, TurnResult
from chatflow.runtime.messages import InboundPayload, TurnResponse
from chatflow.script.sandbox import ScriptSandbox

logger = logging.getLogger(__name__)


def create_error_reference() -> str:
    """Reference shown to the end user and written to the error log."""
    return f"ERR-{uuid.uuid4().hex[:8].upper()}"


class ConversationRuntime:
    """Starts conversations, runs turns and manages session lifecycle."""

    def __init__(
        self,
        flows: FlowRepository,
        sessions: SessionStore,
        engine: SessionEngine | None = None,
        graph_cache_size: int = 128,
    ) -> None:
        self.flows = flows
        self.sessions = sessions
        self.engine = engine or SessionEngine()
        self._graphs: LRUCache[tuple[str, int], FlowGraph] = LRUCache(maxsize=graph_cache_size)

    @classmethod
    def from_settings(
        cls,
        settings: RuntimeSettings,
        flows: FlowRepository | None = None,
        values: ValueProvider | None = None,
    ) -> "ConversationRuntime":
        """Wire stores, sandbox and engine from settings.

        Args:
            settings: Loaded chatflow.yaml settings
            flows: Flow repository to use instead of the configured one
            values: Clock/random source (defaults to the system one)
        """
        sandbox = ScriptSandbox(
            timeout_ms=settings.script.timeout_ms,
            max_code_length=settings.script.max_code_length,
        )
        engine = SessionEngine(sandbox=sandbox, values=values, settings=settings.engine)
        return cls(
            flows=flows or create_flow_repository(settings.flows),
            sessions=create_session_store(settings.persistence),
            engine=engine,
        )

    @property
    def failure_message(self) -> str:
        return self.engine.settings.failure_message

    async def _graph(self, flow_id: str, version: int | None = None) -> FlowGraph:
        definition = await self.flows.load(flow_id, version)
        key = (definition.id, definition.version)
        graph = self._graphs.get(key)
        if graph is None or graph.definition is not definition:
            graph = FlowGraph(definition)
            self._graphs[key] = graph
        return graph

    # === TURNS ===

    async def start_conversation(
        self,
        flow_id: str,
        version: int | None = None,
        initial_variables: Mapping[str, Any] | None = None,
        client: ClientContext | None = None,
    ) -> TurnResponse:
        """Create a session and run it to the first suspension point.

        Raises:
            FlowNotFoundError: If the flow does not exist
            GraphIntegrityError: If the flow has no start container
        """
        graph = await self._graph(flow_id, version)
        state = create_session_state(
            flow_id=graph.flow_id,
            flow_version=graph.version,
            start_container_id=graph.start_container_id(),
            variables=dict(initial_variables or {}),
        )
        state.created_at = state.updated_at = self.engine.values.now()
        state = await self.sessions.create(state)
        logger.info(
            f"Started session for flow '{graph.flow_id}' v{graph.version}",
            extra={"session_id": state.session_id, "flow_id": graph.flow_id},
        )
        return await self._run_turn(state, lambda g: self.engine.start(g, state, client))

    async def handle_turn(
        self,
        session_id: str,
        inbound: InboundPayload,
        client: ClientContext | None = None,
    ) -> TurnResponse:
        """Feed one end-user event to a session.

        Raises:
            SessionNotFoundError: If the session does not exist
        """
        state = await self.sessions.load(session_id)
        if not state.is_active:
            logger.info(
                f"Session is {state.status.value}; ignoring inbound event",
                extra={"session_id": session_id},
            )
            return self._response_for_state(state)
        return await self._run_turn(
            state, lambda g: self.engine.advance(g, state, inbound, client)
        )

    async def trigger_webhook(
        self,
        flow_id: str,
        payload: Mapping[str, Any],
        version: int | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> TurnResponse:
        """Start a session right after the flow's webhook node.

        The payload is stored as JSON in the node's response variable and
        each top-level key becomes a variable of its own.

        Raises:
            WebhookError: If the flow has no webhook node
            WebhookAuthError: If the request credentials do not match
        """
        graph = await self._graph(flow_id, version)
        found = graph.find_node("webhook")
        if found is None:
            raise WebhookError(
                f"Flow '{flow_id}' has no webhook node", context={"flow_id": flow_id}
            )
        container_id, index, node = found
        assert isinstance(node, WebhookNode)
        _authenticate(node.config, headers or {})

        variables: dict[str, str] = {}
        for key, value in payload.items():
            variables[str(key)] = value if isinstance(value, str) else json.dumps(value)
        variables[node.config.response_variable] = json.dumps(dict(payload))

        state = create_session_state(
            flow_id=graph.flow_id,
            flow_version=graph.version,
            start_container_id=container_id,
            variables=variables,
        )
        state.current_node_index = index + 1
        state.created_at = state.updated_at = self.engine.values.now()
        state = await self.sessions.create(state)
        logger.info(
            f"Webhook started session for flow '{graph.flow_id}'",
            extra={"session_id": state.session_id, "flow_id": graph.flow_id},
        )
        return await self._run_turn(state, lambda g: self.engine.start(g, state))

    async def _run_turn(
        self, state: SessionState, step: Callable[[FlowGraph], TurnResult]
    ) -> TurnResponse:
        try:
            graph = await self._graph(state.flow_id, state.flow_version)
            result = await asyncio.to_thread(step, graph)
            saved = await self.sessions.save(result.state, expected_version=state.version)
        except ChatflowError as e:
            return self._failure(state, e)
        return self._response(saved, result)

    def _failure(self, state: SessionState, error: ChatflowError) -> TurnResponse:
        reference = create_error_reference()
        logger.error(
            f"[{reference}] Turn failed for session {state.session_id}: "
            f"{type(error).__name__}: {error}",
            exc_info=True,
            extra={
                "error_reference": reference,
                "session_id": state.session_id,
                "flow_id": state.flow_id,
                "exception_type": type(error).__name__,
            },
        )
        response = self._response_for_state(state)
        response.messages = [TextMessage.from_text(self.failure_message)]
        response.error_reference = reference
        return response

    def _response(self, state: SessionState, result: TurnResult) -> TurnResponse:
        return TurnResponse(
            session_id=state.session_id,
            messages=result.messages,
            waiting_for=state.waiting_for,
            buttons=result.buttons,
            placeholder=result.placeholder,
            side_effects=None if result.side_effects.empty else result.side_effects,
            status=state.status,
        )

    def _response_for_state(self, state: SessionState) -> TurnResponse:
        """Response with no new messages, reflecting where the session stands."""
        return TurnResponse(
            session_id=state.session_id,
            waiting_for=state.waiting_for,
            buttons=list(state.pending_buttons),
            status=state.status,
        )

    # === LIFECYCLE ===

    async def get_session(self, session_id: str) -> SessionState:
        return await self.sessions.load(session_id)

    async def end_session(self, session_id: str) -> SessionState:
        """Close a session; later inbound events produce no messages."""
        state = await self.sessions.load(session_id)
        if state.status == SessionStatus.ENDED:
            return state
        ended = state.model_copy(deep=True)
        ended.status = SessionStatus.ENDED
        ended.waiting_for = None
        ended.waiting_node_id = None
        ended.pending_buttons = []
        ended.updated_at = self.engine.values.now()
        saved = await self.sessions.save(ended, expected_version=state.version)
        logger.info("Session ended", extra={"session_id": session_id})
        return saved

    async def close(self) -> None:
        await self.sessions.close()
        await self.flows.close()
        self.engine.close()


def _authenticate(config: WebhookConfig, headers: Mapping[str, str]) -> None:
    """Check webhook credentials. Header names are matched case-insensitively."""
    if config.authentication == "none":
        return
    lowered = {k.lower(): v for k, v in headers.items()}
    credentials = config.auth_credentials

    if config.authentication == "basic":
        scheme, _, encoded = lowered.get("authorization", "").partition(" ")
        if scheme.lower() != "basic":
            raise WebhookAuthError("Missing basic credentials")
        try:
            decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise WebhookAuthError("Malformed basic credentials") from e
        username, _, password = decoded.partition(":")
        expected_user = credentials.username or ""
        expected_password = credentials.password or ""
        user_ok = _same(username, expected_user)
        password_ok = _same(password, expected_password)
        if not (user_ok and password_ok):
            raise WebhookAuthError("Invalid basic credentials")
        return

    header_name = (credentials.header_name or "").lower()
    if not header_name:
        raise WebhookAuthError("Webhook header authentication has no header configured")
    provided = lowered.get(header_name)
    if provided is None or not _same(provided, credentials.header_value or ""):
        raise WebhookAuthError(f"Invalid or missing {credentials.header_name} header")


def _same(provided: str, expected: str) -> bool:
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
