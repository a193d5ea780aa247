"""Unit tests for the session execution engine."""

import json

import httpx
import pytest

from chatflow.config.settings import EngineSettings
from chatflow.core.errors import GraphIntegrityError
from chatflow.core.messages import MediaMessage, TextMessage
from chatflow.core.state import WAITING_FOR_BUTTONS, SessionStatus
from chatflow.flow.graph import FlowGraph
from chatflow.runtime.engine import SessionEngine
from chatflow.runtime.messages import InboundPayload
from chatflow.script.sandbox import ScriptSandbox
from tests.factories import (
    FIXED_NOW,
    button,
    buttons,
    comparison,
    condition,
    container,
    edge,
    group,
    input_node,
    make_flow,
    make_state,
    script,
    set_variable,
    text,
)


def _texts(result) -> list[str]:
    return [m.text for m in result.messages if isinstance(m, TextMessage)]


def _run(engine, flow, **state_overrides):
    graph = FlowGraph(flow)
    state = make_state(flow, graph.start_container_id(), **state_overrides)
    return graph, engine.start(graph, state)


# === BUBBLES ===


def test_text_bubbles_then_completion(engine):
    """Test text bubbles are interpolated and a container without exit completes"""
    # Arrange
    flow = make_flow([container("a", text("t1", "Hello {{name}}!"), text("t2", "Bye"))])

    # Act
    _, result = _run(engine, flow, variables={"name": "Ana"})

    # Assert
    assert _texts(result) == ["Hello Ana!", "Bye"]
    assert result.state.status == SessionStatus.COMPLETED
    assert result.waiting_for is None


def test_blank_text_emits_nothing(engine):
    """Test a text node that renders blank produces no message"""
    flow = make_flow([container("a", text("t1", "   "), text("t2", "{{empty}}"))])

    _, result = _run(engine, flow, variables={"empty": ""})

    assert result.messages == []


def test_interpolated_values_are_not_reexpanded(engine):
    """Test a variable holding a token is shown literally"""
    flow = make_flow([container("a", text("t", "You said: {{answer}}"))])

    _, result = _run(engine, flow, variables={"answer": "{{secret}}", "secret": "s3cr3t"})

    assert _texts(result) == ["You said: {{secret}}"]


def test_number_bubble(engine):
    """Test number bubbles emit their interpolated value"""
    flow = make_flow(
        [container("a", {"id": "n", "type": "bubble-number", "config": {"number": "{{n}}"}})]
    )

    _, result = _run(engine, flow, variables={"n": "7"})

    assert _texts(result) == ["7"]


def test_media_bubble_default_alt_and_empty_url(engine):
    """Test media bubbles emit media messages and skip an empty URL"""
    # Arrange
    flow = make_flow(
        [
            container(
                "a",
                {"id": "img", "type": "bubble-image", "config": {"url": "https://i/{{pic}}"}},
                {"id": "doc", "type": "bubble-document", "config": {"url": ""}},
            )
        ]
    )

    # Act
    _, result = _run(engine, flow, variables={"pic": "cat.png"})

    # Assert
    assert len(result.messages) == 1
    message = result.messages[0]
    assert isinstance(message, MediaMessage)
    assert (message.kind, message.url, message.alt) == ("image", "https://i/cat.png", "Image")


def test_text_links_are_extracted(engine):
    """Test inline links in bubbles are reported on the message"""
    flow = make_flow([container("a", text("t", "Read [terms](https://example.com/terms)"))])

    _, result = _run(engine, flow)

    assert result.messages[0].links[0].url == "https://example.com/terms"


# === INPUT ===


def test_input_suspends_and_resumes(engine):
    """Test an input node prompts, waits, saves the answer and continues"""
    # Arrange
    flow = make_flow(
        [
            container(
                "a",
                input_node("ask", "name", placeholder="Your name"),
                text("t", "Hi {{name}}"),
            )
        ]
    )
    graph, first = _run(engine, flow)

    # Assert suspension
    assert _texts(first) == ["Prompt ask"]
    assert first.waiting_for == "input-text"
    assert first.state.waiting_node_id == "ask"
    assert first.placeholder == "Your name"
    assert first.state.status == SessionStatus.ACTIVE

    # Act
    second = engine.advance(graph, first.state, InboundPayload(text="  Ana "))

    # Assert
    assert _texts(second) == ["Hi Ana"]
    assert second.state.variables["name"] == "Ana"
    assert second.state.status == SessionStatus.COMPLETED


def test_invalid_answer_reprompts_with_retry_message(engine):
    """Test validation failure emits the retry message, re-prompts and keeps waiting"""
    # Arrange
    flow = make_flow(
        [
            container(
                "a",
                input_node("age", "age", "input-number", retryMessage="Numbers only please"),
                text("t", "Age {{age}}"),
            )
        ]
    )
    graph, first = _run(engine, flow)

    # Act
    retry = engine.advance(graph, first.state, InboundPayload(text="seventeen"))

    # Assert
    assert _texts(retry) == ["Numbers only please", "Prompt age"]
    assert retry.waiting_for == "input-number"
    assert "age" not in retry.state.variables

    done = engine.advance(graph, retry.state, InboundPayload(text="17"))
    assert _texts(done) == ["Age 17"]


def test_invalid_answer_without_retry_message_only_reprompts(engine):
    """Test validation failure without retry message just repeats the prompt"""
    flow = make_flow([container("a", input_node("mail", "email", "input-mail"))])
    graph, first = _run(engine, flow)

    retry = engine.advance(graph, first.state, InboundPayload(text="nope"))

    assert _texts(retry) == ["Prompt mail"]
    assert retry.waiting_for == "input-mail"


def test_answer_without_save_variable_is_not_stored(engine):
    """Test an input node without saveVariable just advances"""
    flow = make_flow([container("a", input_node("ask"), text("t", "ok"))])
    graph, first = _run(engine, flow)

    second = engine.advance(graph, first.state, InboundPayload(text="whatever"))

    assert _texts(second) == ["ok"]
    assert second.state.variables == {}


# === BUTTONS ===


def _choice_flow():
    return make_flow(
        [
            container(
                "a",
                buttons(
                    "pick",
                    button("y", "Yes"),
                    button("n", "No", value="nope", saveVariable="answer_copy"),
                    button("w", "Web", redirectUrl="https://example.com/{{ref}}"),
                    save_variable="answer",
                ),
            ),
            container("yes", text("ty", "You said yes")),
            container("other", text("to", "Something else")),
        ],
        [
            edge("a", "yes", "pick-btn-y"),
            edge("a", "other", "pick-default"),
        ],
    )


def test_buttons_suspend_with_options(engine):
    """Test a buttons node prompts and lists its choices"""
    # Act
    _, result = _run(engine, _choice_flow())

    # Assert
    assert _texts(result) == ["Choose pick"]
    assert result.waiting_for == WAITING_FOR_BUTTONS
    assert [b.id for b in result.buttons] == ["y", "n", "w"]
    assert result.buttons[1].value == "nope"
    assert [b.id for b in result.state.pending_buttons] == ["y", "n", "w"]


def test_button_choice_follows_its_edge(engine):
    """Test a chosen button saves its value and follows its own handle"""
    # Arrange
    graph, first = _run(engine, _choice_flow())

    # Act
    result = engine.advance(graph, first.state, InboundPayload(button_id="y"))

    # Assert
    assert _texts(result) == ["You said yes"]
    assert result.state.variables["answer"] == "Yes"
    assert result.state.pending_buttons == []
    assert result.buttons == []


def test_button_without_edge_uses_default(engine):
    """Test a button with no edge of its own follows the default handle"""
    # Arrange
    graph, first = _run(engine, _choice_flow())

    # Act
    result = engine.advance(graph, first.state, InboundPayload(button_id="n"))

    # Assert
    assert _texts(result) == ["Something else"]
    assert result.state.variables["answer"] == "nope"
    assert result.state.variables["answer_copy"] == "nope"


def test_button_matched_by_text(engine):
    """Test typed text matching a label selects that button"""
    graph, first = _run(engine, _choice_flow())

    result = engine.advance(graph, first.state, InboundPayload(text="yes"))

    assert _texts(result) == ["You said yes"]


def test_unrecognized_choice_uses_default(engine):
    """Test text matching no button follows the default handle and saves nothing"""
    graph, first = _run(engine, _choice_flow())

    result = engine.advance(graph, first.state, InboundPayload(text="maybe"))

    assert _texts(result) == ["Something else"]
    assert "answer" not in result.state.variables


def test_empty_payload_reprompts_buttons(engine):
    """Test an empty event while waiting for a choice re-prompts"""
    graph, first = _run(engine, _choice_flow())

    result = engine.advance(graph, first.state, InboundPayload(text="  "))

    assert _texts(result) == ["Choose pick"]
    assert result.waiting_for == WAITING_FOR_BUTTONS
    assert len(result.buttons) == 3


def test_button_redirect_is_a_side_effect(engine):
    """Test a button with redirectUrl reports it as a side effect, not a message"""
    graph, first = _run(engine, _choice_flow(), variables={"ref": "abc"})

    result = engine.advance(graph, first.state, InboundPayload(button_id="w"))

    assert result.side_effects.redirect_url == "https://example.com/abc"
    assert _texts(result) == ["Something else"]


def test_button_without_any_edge_advances_in_container(engine):
    """Test a choice with no matching edge continues with the next node"""
    flow = make_flow(
        [container("a", buttons("pick", button("y", "Yes")), text("t", "after"))]
    )
    graph, first = _run(engine, flow)

    result = engine.advance(graph, first.state, InboundPayload(button_id="y"))

    assert _texts(result) == ["after"]
    assert result.state.status == SessionStatus.COMPLETED


def test_no_fall_through_after_branching_last_node(engine):
    """Test a container ending in a buttons node does not take its fall-through edge"""
    flow = make_flow(
        [
            container("a", buttons("pick", button("y", "Yes"))),
            container("b", text("t", "fall-through")),
        ],
        [edge("a", "b")],
    )
    graph, first = _run(engine, flow)

    result = engine.advance(graph, first.state, InboundPayload(button_id="y"))

    assert result.messages == []
    assert result.state.status == SessionStatus.COMPLETED


# === CONDITIONS ===


def _condition_flow():
    return make_flow(
        [
            container(
                "a",
                condition(
                    "k",
                    group("g1", comparison("x", "greater_than", "10")),
                    group("g2", comparison("x", "greater_than", "1")),
                    group("g3", comparison("x", "greater_than", "0")),
                ),
            ),
            container("G1", text("t1", "G1")),
            container("G2", text("t2", "G2")),
            container("G3", text("t3", "G3")),
            container("else", text("t4", "else")),
        ],
        [
            edge("a", "G1", "k-cond-g1"),
            edge("a", "G2", "k-cond-g2"),
            edge("a", "G3", "k-cond-g3"),
            edge("a", "else", "k-else"),
        ],
    )


@pytest.mark.parametrize("x,expected", [("50", "G1"), ("5", "G2"), ("0.5", "G3"), ("-1", "else")])
def test_condition_routes_to_first_matching_group(engine, x, expected):
    """Test condition nodes follow the first group that holds, else the else handle"""
    _, result = _run(engine, _condition_flow(), variables={"x": x})

    assert _texts(result) == [expected]


def test_condition_without_edge_continues_in_container(engine):
    """Test a matched handle with no edge advances to the next node"""
    flow = make_flow(
        [
            container(
                "a",
                condition("k", group("g1", comparison("x", "is_set"))),
                text("t", "next node"),
            )
        ]
    )

    _, result = _run(engine, flow, variables={"x": "1"})

    assert _texts(result) == ["next node"]


# === SET VARIABLE ===


def test_set_variable_custom_value_is_interpolated(engine):
    """Test custom values interpolate other variables"""
    flow = make_flow(
        [
            container(
                "a",
                set_variable("sv", "{{full}}", "{{first}} {{last}}"),
                text("t", "{{full}}"),
            )
        ]
    )

    _, result = _run(engine, flow, variables={"first": "Ana", "last": "Ruiz"})

    assert result.state.variables["full"] == "Ana Ruiz"
    assert _texts(result) == ["Ana Ruiz"]


@pytest.mark.parametrize(
    "value_type,expected",
    [
        ("now", "2024-05-17T10:30:00.000Z"),
        ("today", "2024-05-17"),
        ("yesterday", "2024-05-16"),
        ("tomorrow", "2024-05-18"),
        ("random", "abc123"),
        ("empty", ""),
    ],
)
def test_set_variable_computed_values(engine, value_type, expected):
    """Test computed value types use the engine's value provider"""
    flow = make_flow([container("a", set_variable("sv", "v", valueType=value_type))])

    _, result = _run(engine, flow, variables={"v": "old"})

    assert result.state.variables["v"] == expected


def test_set_variable_save_in_results(engine):
    """Test saveInResults copies the value into the session results"""
    flow = make_flow([container("a", set_variable("sv", "score", "10", saveInResults=True))])

    _, result = _run(engine, flow)

    assert result.state.results == {"score": "10"}


def test_set_variable_execute_on_client_evaluates_expression(engine):
    """Test executeOnClient treats the value as an expression"""
    flow = make_flow(
        [
            container(
                "a",
                set_variable(
                    "sv",
                    "total",
                    "int(getVariable('a')) + int(getVariable('b'))",
                    executeOnClient=True,
                ),
            )
        ]
    )

    _, result = _run(engine, flow, variables={"a": "2", "b": "3"})

    assert result.state.variables["total"] == "5"


def test_set_variable_without_name_is_skipped(engine):
    """Test a set-variable node with no variable name does nothing"""
    flow = make_flow([container("a", set_variable("sv", "", "x"), text("t", "ok"))])

    _, result = _run(engine, flow)

    assert _texts(result) == ["ok"]
    assert result.state.variables == {}


# === SCRIPTS ===


def test_script_sets_variable_without_messages(engine):
    """Test a script mutates variables and emits nothing"""
    flow = make_flow([container("a", script("s", "setVariable('x', 40 + 2)"))])

    _, result = _run(engine, flow)

    assert result.messages == []
    assert result.state.variables["x"] == "42"


def test_failing_script_is_skipped_by_default(engine):
    """Test a failing script is logged and the turn continues past it"""
    flow = make_flow(
        [
            container(
                "a",
                script("s", "setVariable('x', 1)\nraise ValueError('boom')"),
                text("t", "after"),
            )
        ]
    )

    _, result = _run(engine, flow)

    assert _texts(result) == ["after"]
    assert "x" not in result.state.variables


def test_failing_script_with_retry_policy_stays_on_node(retry_engine):
    """Test the retry policy sends the failure message and re-runs the script next turn"""
    # Arrange
    flow = make_flow([container("a", script("s", "1 / 0"), text("t", "after"))])

    # Act
    graph, first = _run(retry_engine, flow)

    # Assert
    assert _texts(first) == [retry_engine.settings.failure_message]
    assert first.state.current_node_index == 0
    assert first.state.status == SessionStatus.ACTIVE

    second = retry_engine.advance(graph, first.state, InboundPayload(text="again"))
    assert _texts(second) == [retry_engine.settings.failure_message]


def test_script_redirect_suspends_turn(engine):
    """Test a client script redirect ends the turn without waiting for input"""
    # Arrange
    flow = make_flow(
        [
            container(
                "a",
                script("s", "location.href = 'https://pay.example'", on_server=False),
                text("t", "welcome back"),
            )
        ]
    )

    # Act
    graph, first = _run(engine, flow)

    # Assert
    assert first.side_effects.redirect_url == "https://pay.example"
    assert first.messages == []
    assert first.waiting_for is None
    assert first.state.status == SessionStatus.ACTIVE

    second = engine.advance(graph, first.state, InboundPayload())
    assert _texts(second) == ["welcome back"]


def test_script_timeout_is_a_script_failure(values):
    """Test a runaway script is handled by the failure policy"""
    engine = SessionEngine(sandbox=ScriptSandbox(timeout_ms=20), values=values)
    flow = make_flow([container("a", script("s", "while True:\n    pass"), text("t", "after"))])

    _, result = _run(engine, flow)

    assert _texts(result) == ["after"]


# === START AND WEBHOOK NODES ===


def test_start_node_initial_variables(engine):
    """Test start node defaults apply only to variables not already set"""
    flow = make_flow(
        [
            container(
                "a",
                {
                    "id": "s",
                    "type": "start",
                    "config": {
                        "initialVariables": [
                            {"name": "lang", "defaultValue": "en"},
                            {"name": "{{channel}}", "defaultValue": "web"},
                        ]
                    },
                },
                text("t", "{{lang}}/{{channel}}"),
            )
        ]
    )

    _, result = _run(engine, flow, variables={"lang": "es"})

    assert _texts(result) == ["es/web"]


def test_webhook_node_in_normal_turn_defines_response_variable(engine):
    """Test reaching a webhook node during a turn just defines its variable"""
    flow = make_flow([container("a", {"id": "h", "type": "webhook", "config": {}}, text("t", "x"))])

    _, result = _run(engine, flow)

    assert result.state.variables["webhookData"] == ""
    assert _texts(result) == ["x"]


# === GRAPH TRAVERSAL AND SAFETY ===


def test_fall_through_edges_chain_containers(engine):
    """Test containers chain through fall-through edges"""
    flow = make_flow(
        [
            container("a", text("t1", "A")),
            container("b", text("t2", "B")),
            container("c", text("t3", "C")),
        ],
        [edge("a", "b"), edge("b", "c")],
    )

    _, result = _run(engine, flow)

    assert _texts(result) == ["A", "B", "C"]
    assert result.state.current_container_id == "c"


def test_cycle_without_input_hits_hop_limit(values):
    """Test a loop that never waits for input fails instead of spinning forever"""
    # Arrange
    engine = SessionEngine(values=values, settings=EngineSettings(max_hops=5))
    flow = make_flow(
        [
            container("a", {"id": "s", "type": "start", "config": {}}, set_variable("x", "x", "1")),
            container("b", set_variable("y", "y", "2")),
        ],
        [edge("a", "b"), edge("b", "a")],
    )

    # Act & Assert
    with pytest.raises(GraphIntegrityError, match="Exceeded 5 container jumps"):
        _run(engine, flow)


def test_dangling_edge_fails_without_touching_input_state(engine):
    """Test a graph error leaves the caller's state unchanged"""
    # Arrange
    flow = make_flow(
        [container("a", input_node("ask", "name"), text("t", "Hi"))],
        [edge("a", "ghost")],
    )
    graph = FlowGraph(flow)
    first = engine.start(graph, make_state(flow, "a"))
    before = first.state.model_copy(deep=True)

    # Act
    with pytest.raises(GraphIntegrityError):
        engine.advance(graph, first.state, InboundPayload(text="Ana"))

    # Assert
    assert first.state == before
    assert "name" not in first.state.variables


def test_cursor_not_on_waiting_node_is_graph_error(engine):
    """Test a state whose cursor disagrees with waiting_node_id is rejected"""
    flow = make_flow([container("a", text("t", "Hi"), input_node("ask", "name"))])
    graph = FlowGraph(flow)
    state = make_state(flow, "a", waiting_for="input-text", waiting_node_id="ask")

    with pytest.raises(GraphIntegrityError, match="waits on node 'ask'"):
        engine.advance(graph, state, InboundPayload(text="Ana"))


@pytest.mark.parametrize("status", [SessionStatus.COMPLETED, SessionStatus.ENDED])
def test_inactive_session_produces_no_messages(engine, status):
    """Test events for completed or ended sessions are ignored"""
    flow = make_flow([container("a", text("t", "Hi"))])
    graph = FlowGraph(flow)
    state = make_state(flow, "a", status=status)

    result = engine.advance(graph, state, InboundPayload(text="hello"))

    assert result.messages == []
    assert result.state.status == status


def test_message_log_records_both_sides(engine):
    """Test the transcript keeps bot messages and user answers in order"""
    flow = make_flow([container("a", input_node("ask", "name"), text("t", "Hi {{name}}"))])
    graph, first = _run(engine, flow)

    result = engine.advance(graph, first.state, InboundPayload(text="Ana"))

    log = result.state.message_log
    assert [entry.role for entry in log] == ["bot", "user", "bot"]
    assert log[1].text == "Ana"
    assert log[2].message.text == "Hi Ana"


def test_updated_at_comes_from_value_provider(engine):
    """Test the engine stamps the state with the provider's clock"""
    flow = make_flow([container("a", text("t", "Hi"))])

    _, result = _run(engine, flow)

    assert result.state.updated_at == FIXED_NOW


def test_same_inputs_produce_same_outputs(engine):
    """Test turns are deterministic for a fixed value provider"""
    flow = make_flow(
        [container("a", set_variable("r", "token", valueType="random"), text("t", "{{token}}"))]
    )
    graph = FlowGraph(flow)

    first = engine.start(graph, make_state(flow, "a", created_at=FIXED_NOW))
    second = engine.start(graph, make_state(flow, "a", created_at=FIXED_NOW))

    assert first.messages == second.messages
    assert first.state == second.state


# === HTTP REQUEST NODES ===


def _http_node(node_id: str, **config) -> dict:
    return {"id": node_id, "type": "http-request", "config": config}


def _http_engine(values, handler) -> SessionEngine:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return SessionEngine(sandbox=ScriptSandbox(timeout_ms=500), values=values, http_client=client)


def test_http_request_stores_compact_json(values):
    """Test a GET interpolates the URL and stores the JSON body in compact form"""
    # Arrange
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"status": "shipped", "items": [1, 2]})

    engine = _http_engine(values, handler)
    flow = make_flow(
        [
            container(
                "a",
                _http_node(
                    "fetch",
                    url="https://api.example.com/orders/{{order}}",
                    queryParams=[{"name": "lang", "value": "{{lang}}"}],
                    headers=[{"name": "X-Token", "value": "t-{{order}}"}],
                    responseVariable="order_data",
                ),
                text("t", "Order: {{order_data}}"),
            )
        ]
    )

    # Act
    _, result = _run(engine, flow, variables={"order": "42", "lang": "es"})

    # Assert
    assert str(seen[0].url) == "https://api.example.com/orders/42?lang=es"
    assert seen[0].headers["x-token"] == "t-42"
    assert seen[0].headers["content-type"] == "application/json"
    assert result.state.variables["order_data"] == '{"status":"shipped","items":[1,2]}'
    assert _texts(result) == ["HTTP 200", 'Order: {"status":"shipped","items":[1,2]}']


def test_http_request_body_only_for_write_methods(values):
    """Test the body is interpolated for POST and dropped for GET"""
    # Arrange
    bodies: dict[str, bytes] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        bodies[request.method] = request.content
        return httpx.Response(201, text="created")

    engine = _http_engine(values, handler)
    flow = make_flow(
        [
            container(
                "a",
                _http_node("post", method="post", url="https://x.test/", body='{"n": "{{n}}"}'),
                _http_node("get", url="https://x.test/", body='{"n": "{{n}}"}'),
            )
        ]
    )

    # Act
    _, result = _run(engine, flow, variables={"n": "Ana"})

    # Assert
    assert json.loads(bodies["POST"]) == {"n": "Ana"}
    assert bodies["GET"] == b""
    assert result.state.variables["httpResponse"] == "created"
    assert _texts(result) == ["HTTP 201", "HTTP 201"]


def test_http_request_failure_reports_and_continues(values):
    """Test a transport error emits an error bubble and the flow goes on"""

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    engine = _http_engine(values, handler)
    flow = make_flow(
        [container("a", _http_node("fetch", url="https://down.test/"), text("t", "after"))]
    )

    _, result = _run(engine, flow)

    assert _texts(result) == ["HTTP request failed: connection refused", "after"]
    assert "httpResponse" not in result.state.variables
    assert result.state.status == SessionStatus.COMPLETED


def test_http_request_without_url_is_skipped(values):
    """Test a node whose URL renders empty sends nothing"""
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200)

    engine = _http_engine(values, handler)
    flow = make_flow([container("a", _http_node("fetch", url="{{missing_url}}"), text("t", "ok"))])

    _, result = _run(engine, flow, variables={"missing_url": ""})

    assert calls == []
    assert _texts(result) == ["ok"]
