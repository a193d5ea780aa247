"""Session execution engine.

Walks a flow graph one turn at a time. A turn starts from the persisted
cursor, consumes the pending answer (if the session is waiting for one),
then executes nodes until it reaches a suspension point:

- an input node (waiting for a typed answer)
- a buttons node (waiting for a choice)
- a script that produced a redirect
- the end of the conversation (no outgoing edge)

The engine is synchronous and never touches storage. It works on a deep
copy of the given state, so a raised error leaves the caller's state as it
was and nothing from the failed turn can be persisted.
"""

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

import httpx

from chatflow.config.settings import EngineSettings
from chatflow.core.conditions import evaluate_conditions
from chatflow.core.errors import GraphIntegrityError, ScriptExecutionError, ValidationError
from chatflow.core.messages import (
    ButtonOption,
    ClientContext,
    MediaMessage,
    MessageLogEntry,
    OutboundMessage,
    SideEffects,
    TextMessage,
)
from chatflow.core.state import WAITING_FOR_BUTTONS, SessionState, SessionStatus
from chatflow.core.validation import validate_input
from chatflow.core.values import SystemValueProvider, ValueProvider, computed_value
from chatflow.core.variables import VariableStore, strip_token
from chatflow.flow.graph import FlowGraph
from chatflow.flow.models import (
    BRANCHING_NODES,
    BaseNode,
    ButtonsNode,
    ConditionNode,
    HttpRequestNode,
    InputNode,
    MediaBubbleNode,
    NumberBubbleNode,
    ScriptNode,
    SetVariableNode,
    SetVariableValueType,
    StartNode,
    TextBubbleNode,
    WebhookNode,
    button_handle,
    condition_handle,
    default_handle,
    else_handle,
)
from chatflow.runtime.messages import InboundPayload
from chatflow.script.sandbox import ScriptMode, ScriptSandbox

logger = logging.getLogger(__name__)

# Methods whose configured body is sent
BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})

DEFAULT_MEDIA_ALT = {
    "image": "Image",
    "video": "Video",
    "audio": "Audio",
    "document": "Document",
}


@dataclass
class TurnResult:
    """State after a turn plus what the turn produced."""

    state: SessionState
    messages: list[OutboundMessage] = field(default_factory=list)
    buttons: list[ButtonOption] = field(default_factory=list)
    side_effects: SideEffects = field(default_factory=SideEffects)
    placeholder: str | None = None

    @property
    def waiting_for(self) -> str | None:
        return self.state.waiting_for


class _Turn:
    """Mutable working set of one turn."""

    def __init__(
        self, graph: FlowGraph, state: SessionState, client: ClientContext | None
    ) -> None:
        self.graph = graph
        self.state = state
        self.client = client
        self.store = VariableStore(state.variables)
        self.messages: list[OutboundMessage] = []
        self.buttons: list[ButtonOption] = []
        self.side_effects = SideEffects()
        self.placeholder: str | None = None
        self.hops = 0

    @property
    def container_id(self) -> str:
        if self.state.current_container_id is None:
            raise GraphIntegrityError(f"Session '{self.state.session_id}' has no position")
        return self.state.current_container_id

    def emit(self, message: OutboundMessage) -> None:
        self.messages.append(message)
        self.state.message_log.append(MessageLogEntry(role="bot", message=message))

    def emit_text(self, text: str, node_id: str) -> None:
        """Emit interpolated text; blank text emits nothing."""
        text = self.store.interpolate(text)
        if text.strip():
            self.emit(TextMessage.from_text(text, node_id=node_id))

    def record_answer(self, text: str | None, button_id: str | None = None) -> None:
        self.state.message_log.append(MessageLogEntry(role="user", text=text, button_id=button_id))

    def next_node(self) -> None:
        self.state.current_node_index += 1

    def clear_wait(self) -> None:
        self.state.waiting_for = None
        self.state.waiting_node_id = None
        self.state.pending_buttons = []


# Node handlers return True to keep running the turn, False to suspend
NodeHandler = Callable[[_Turn, BaseNode], bool]


class SessionEngine:
    """Run-to-suspension interpreter for flow graphs."""

    def __init__(
        self,
        sandbox: ScriptSandbox | None = None,
        values: ValueProvider | None = None,
        settings: EngineSettings | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.sandbox = sandbox or ScriptSandbox()
        self._http = http_client
        self.values = values or SystemValueProvider()
        self.settings = settings or EngineSettings()
        self._handlers: dict[type[BaseNode], NodeHandler] = {
            TextBubbleNode: self._text_bubble,
            NumberBubbleNode: self._number_bubble,
            MediaBubbleNode: self._media_bubble,
            InputNode: self._input,
            ButtonsNode: self._buttons,
            ConditionNode: self._condition,
            SetVariableNode: self._set_variable,
            ScriptNode: self._script,
            StartNode: self._start,
            WebhookNode: self._webhook,
            HttpRequestNode: self._http_request,
        }

    @property
    def http(self) -> httpx.Client:
        """Client for http-request nodes, created on first use."""
        if self._http is None:
            self._http = httpx.Client()
        return self._http

    def close(self) -> None:
        if self._http is not None:
            self._http.close()
            self._http = None

    # === TURN ENTRY POINTS ===

    def start(
        self, graph: FlowGraph, state: SessionState, client: ClientContext | None = None
    ) -> TurnResult:
        """Run a fresh session up to its first suspension point."""
        turn = _Turn(graph, state.model_copy(deep=True), client)
        if turn.state.is_active:
            self._run(turn)
        return self._finish(turn)

    def advance(
        self,
        graph: FlowGraph,
        state: SessionState,
        inbound: InboundPayload,
        client: ClientContext | None = None,
    ) -> TurnResult:
        """Consume one inbound event and run to the next suspension point.

        Raises:
            GraphIntegrityError: If the flow cannot be walked from the cursor
        """
        turn = _Turn(graph, state.model_copy(deep=True), client)
        if not turn.state.is_active:
            logger.info(
                f"Ignoring inbound event for {turn.state.status.value} session",
                extra={"session_id": turn.state.session_id},
            )
            return self._finish(turn)

        waiting_for = turn.state.waiting_for
        if waiting_for == WAITING_FOR_BUTTONS:
            keep_running = self._consume_choice(turn, inbound)
        elif waiting_for is not None:
            keep_running = self._consume_answer(turn, inbound)
        else:
            if not inbound.is_empty:
                turn.record_answer(inbound.text, inbound.button_id)
            keep_running = True

        if keep_running:
            self._run(turn)
        return self._finish(turn)

    # === MAIN LOOP ===

    def _run(self, turn: _Turn) -> None:
        while True:
            container_id = turn.container_id
            node = turn.graph.node_at(container_id, turn.state.current_node_index)

            if node is None:
                target = self._fall_through(turn, container_id)
                if target is None:
                    self._complete(turn)
                    return
                self._jump(turn, target)
                continue

            handler = self._handler_for(node)
            logger.debug(
                f"Executing node '{node.id}' ({type(node).__name__})",
                extra={
                    "session_id": turn.state.session_id,
                    "container_id": container_id,
                    "node_index": turn.state.current_node_index,
                },
            )
            if not handler(turn, node):
                return

    def _handler_for(self, node: BaseNode) -> NodeHandler:
        handler = self._handlers.get(type(node))
        if handler is None:
            raise GraphIntegrityError(f"No handler for node type {type(node).__name__}")
        return handler

    def _fall_through(self, turn: _Turn, container_id: str) -> str | None:
        container = turn.graph.container(container_id)
        # A branching last node owns its exits
        if container.nodes and isinstance(container.nodes[-1], BRANCHING_NODES):
            return None
        return turn.graph.target_for(container_id, None)

    def _jump(self, turn: _Turn, target: str) -> None:
        turn.hops += 1
        if turn.hops > self.settings.max_hops:
            raise GraphIntegrityError(
                f"Exceeded {self.settings.max_hops} container jumps without waiting for input; "
                f"the flow probably loops",
                context={"session_id": turn.state.session_id, "container_id": target},
            )
        turn.state.current_container_id = target
        turn.state.current_node_index = 0

    def _complete(self, turn: _Turn) -> None:
        turn.clear_wait()
        turn.state.status = SessionStatus.COMPLETED
        logger.info(
            "Conversation completed",
            extra={"session_id": turn.state.session_id, "flow_id": turn.state.flow_id},
        )

    def _suspend(self, turn: _Turn, node: BaseNode, waiting_for: str) -> bool:
        turn.state.waiting_for = waiting_for
        turn.state.waiting_node_id = node.id
        logger.info(
            f"Waiting for {waiting_for} at node '{node.id}'",
            extra={"session_id": turn.state.session_id, "node_id": node.id},
        )
        return False

    def _finish(self, turn: _Turn) -> TurnResult:
        state = turn.state
        state.variables = turn.store.as_dict()
        if state.waiting_for == WAITING_FOR_BUTTONS:
            state.pending_buttons = list(turn.buttons or state.pending_buttons)
        state.updated_at = self.values.now()
        return TurnResult(
            state=state,
            messages=turn.messages,
            buttons=list(state.pending_buttons) if state.waiting_for == WAITING_FOR_BUTTONS else [],
            side_effects=turn.side_effects,
            placeholder=turn.placeholder,
        )

    # === RESUMING ===

    def _waiting_node(self, turn: _Turn, node_type: type[BaseNode]) -> BaseNode:
        node = turn.graph.node_at(turn.container_id, turn.state.current_node_index)
        if not isinstance(node, node_type) or node.id != turn.state.waiting_node_id:
            raise GraphIntegrityError(
                f"Session waits on node '{turn.state.waiting_node_id}' but the cursor points "
                f"at {node.id if node else 'nothing'}",
                context={"session_id": turn.state.session_id},
            )
        return node

    def _consume_answer(self, turn: _Turn, inbound: InboundPayload) -> bool:
        node = self._waiting_node(turn, InputNode)
        assert isinstance(node, InputNode)
        turn.record_answer(inbound.text)

        try:
            value = validate_input(node, inbound.text).unwrap()
        except ValidationError as e:
            logger.info(
                f"Answer rejected at node '{node.id}': {e}",
                extra={"session_id": turn.state.session_id, "node_id": node.id},
            )
            if node.config.retry_message:
                turn.emit_text(node.config.retry_message, node.id)
            self._prompt_input(turn, node)
            return False

        save_variable = strip_token(node.config.save_variable or "")
        if save_variable:
            turn.store.set(save_variable, value)
        turn.clear_wait()
        turn.next_node()
        return True

    def _consume_choice(self, turn: _Turn, inbound: InboundPayload) -> bool:
        node = self._waiting_node(turn, ButtonsNode)
        assert isinstance(node, ButtonsNode)

        if inbound.is_empty:
            self._prompt_buttons(turn, node)
            return False

        button = node.find_button(inbound.button_id, inbound.text)
        turn.record_answer(button.label if button else inbound.text, inbound.button_id)
        turn.clear_wait()

        target: str | None = None
        if button is not None:
            for name in (button.save_variable, node.config.save_variable):
                name = strip_token(name or "")
                if name:
                    turn.store.set(name, button.stored_value)
            if button.redirect_url:
                turn.side_effects.redirect_url = turn.store.interpolate(button.redirect_url)
            target = turn.graph.target_for(turn.container_id, button_handle(node.id, button.id))
        else:
            logger.info(
                f"Unrecognized choice at node '{node.id}', using default exit",
                extra={"session_id": turn.state.session_id, "button_id": inbound.button_id},
            )

        if target is None:
            target = turn.graph.target_for(turn.container_id, default_handle(node.id))
        if target is None:
            turn.next_node()
        else:
            self._jump(turn, target)
        return True

    # === NODE HANDLERS ===

    def _text_bubble(self, turn: _Turn, node: BaseNode) -> bool:
        assert isinstance(node, TextBubbleNode)
        turn.emit_text(node.config.message, node.id)
        turn.next_node()
        return True

    def _number_bubble(self, turn: _Turn, node: BaseNode) -> bool:
        assert isinstance(node, NumberBubbleNode)
        turn.emit_text(node.config.number, node.id)
        turn.next_node()
        return True

    def _media_bubble(self, turn: _Turn, node: BaseNode) -> bool:
        assert isinstance(node, MediaBubbleNode)
        url = turn.store.interpolate(node.config.url).strip()
        if url:
            kind = node.media_kind
            alt = turn.store.interpolate(node.config.alt or "") or DEFAULT_MEDIA_ALT[kind]
            turn.emit(
                MediaMessage(kind=kind, url=url, alt=alt, node_id=node.id)  # type: ignore[arg-type]
            )
        turn.next_node()
        return True

    def _prompt_input(self, turn: _Turn, node: InputNode) -> None:
        turn.emit_text(node.config.prompt, node.id)
        if node.config.placeholder:
            turn.placeholder = turn.store.interpolate(node.config.placeholder)

    def _input(self, turn: _Turn, node: BaseNode) -> bool:
        assert isinstance(node, InputNode)
        self._prompt_input(turn, node)
        return self._suspend(turn, node, node.type)

    def _prompt_buttons(self, turn: _Turn, node: ButtonsNode) -> None:
        turn.emit_text(node.config.prompt, node.id)
        turn.buttons = [
            ButtonOption(
                id=button.id,
                label=turn.store.interpolate(button.label),
                value=button.stored_value,
                description=button.description,
            )
            for button in node.config.buttons
        ]
        turn.state.pending_buttons = list(turn.buttons)

    def _buttons(self, turn: _Turn, node: BaseNode) -> bool:
        assert isinstance(node, ButtonsNode)
        self._prompt_buttons(turn, node)
        return self._suspend(turn, node, WAITING_FOR_BUTTONS)

    def _condition(self, turn: _Turn, node: BaseNode) -> bool:
        assert isinstance(node, ConditionNode)
        result = evaluate_conditions(node.config.conditions, turn.store)
        if result.matched:
            handle = condition_handle(node.id, result.matched_group_id or "")
        else:
            handle = else_handle(node.id)
        logger.debug(
            f"Condition '{node.id}' resolved to {handle}",
            extra={"session_id": turn.state.session_id, "node_id": node.id},
        )

        target = turn.graph.target_for(turn.container_id, handle)
        if target is None:
            turn.next_node()
        else:
            self._jump(turn, target)
        return True

    def _set_variable(self, turn: _Turn, node: BaseNode) -> bool:
        assert isinstance(node, SetVariableNode)
        config = node.config
        name = strip_token(config.variable_name)
        if not name:
            logger.warning(
                f"set-variable node '{node.id}' has no variable name",
                extra={"session_id": turn.state.session_id, "node_id": node.id},
            )
            turn.next_node()
            return True

        if config.value_type != SetVariableValueType.CUSTOM:
            value = computed_value(config.value_type, self.values)
        elif config.execute_on_client:
            try:
                value = self.sandbox.evaluate(
                    config.value, turn.store, ScriptMode.CLIENT, turn.client
                ).value
            except ScriptExecutionError as e:
                return self._script_failed(turn, node, e)
        else:
            value = turn.store.interpolate(config.value)

        turn.store.set(name, value)
        if config.save_in_results:
            turn.state.results[name] = turn.store.get(name) or ""
        turn.next_node()
        return True

    def _script(self, turn: _Turn, node: BaseNode) -> bool:
        assert isinstance(node, ScriptNode)
        mode = ScriptMode.SERVER if node.config.execute_on_server else ScriptMode.CLIENT
        try:
            result = self.sandbox.run(node.config.code, turn.store, mode, turn.client)
        except ScriptExecutionError as e:
            return self._script_failed(turn, node, e)

        result.apply(turn.store)
        turn.next_node()
        if result.redirect_url:
            turn.side_effects.redirect_url = result.redirect_url
            logger.info(
                f"Script '{node.id}' redirected to {result.redirect_url}",
                extra={"session_id": turn.state.session_id, "node_id": node.id},
            )
            return False
        return True

    def _script_failed(self, turn: _Turn, node: BaseNode, error: ScriptExecutionError) -> bool:
        policy = self.settings.script_failure_policy
        logger.warning(
            f"Script in node '{node.id}' failed ({policy}): {error}",
            extra={
                "session_id": turn.state.session_id,
                "node_id": node.id,
                "error_type": type(error).__name__,
            },
        )
        if policy == "retry":
            turn.emit(TextMessage.from_text(self.settings.failure_message, node_id=node.id))
            return False
        turn.next_node()
        return True

    def _start(self, turn: _Turn, node: BaseNode) -> bool:
        assert isinstance(node, StartNode)
        # Values supplied when the session was created take precedence
        for variable in node.config.initial_variables:
            name = strip_token(variable.name)
            if name and not turn.store.has(name):
                turn.store.set(name, turn.store.interpolate(variable.default_value))
        turn.next_node()
        return True

    def _webhook(self, turn: _Turn, node: BaseNode) -> bool:
        assert isinstance(node, WebhookNode)
        name = strip_token(node.config.response_variable)
        if name and not turn.store.has(name):
            turn.store.set(name, "")
        turn.next_node()
        return True

    def _http_request(self, turn: _Turn, node: BaseNode) -> bool:
        assert isinstance(node, HttpRequestNode)
        config = node.config
        log_extra = {"session_id": turn.state.session_id, "node_id": node.id}
        turn.next_node()
        url = turn.store.interpolate(config.url).strip()
        if not url:
            logger.warning(f"http-request node '{node.id}' has no URL", extra=log_extra)
            return True

        headers = {"Content-Type": "application/json"}
        for header in config.headers:
            if header.name:
                headers[header.name] = turn.store.interpolate(header.value)
        params = [
            (param.name, turn.store.interpolate(param.value))
            for param in config.query_params
            if param.name
        ]
        content = None
        if config.body and config.method in BODY_METHODS:
            content = turn.store.interpolate(config.body)

        try:
            response = self.http.request(
                config.method,
                url,
                headers=headers,
                params=params,
                content=content,
                timeout=config.timeout / 1000,
                follow_redirects=config.follow_redirects,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(
                f"http-request node '{node.id}' failed: {e}",
                extra={**log_extra, "error_type": type(e).__name__},
            )
            turn.emit(TextMessage.from_text(f"HTTP request failed: {e}", node_id=node.id))
            return True

        name = strip_token(config.response_variable)
        if name:
            turn.store.set(name, _response_text(response))
        logger.info(
            f"http-request node '{node.id}': {config.method} {url} -> {response.status_code}",
            extra=log_extra,
        )
        turn.emit(TextMessage.from_text(f"HTTP {response.status_code}", node_id=node.id))
        return True


def _response_text(response: httpx.Response) -> str:
    """Response body; JSON bodies are stored in compact form."""
    try:
        return json.dumps(response.json(), ensure_ascii=False, separators=(",", ":"))
    except ValueError:
        return response.text
