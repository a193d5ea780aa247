"""Flow definition models with discriminated unions.

A flow is a set of containers (ordered node lists) connected by edges.
Each node type has its own class with a typed ``config`` payload, so the
engine can dispatch on the node class instead of probing optional fields.

Wire names are camelCase (as produced by the authoring surface); Python
attributes are snake_case. Both spellings are accepted on input.
"""

from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class FlowModel(BaseModel):
    """Base for all flow records."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


# === HANDLES ===


def button_handle(node_id: str, button_id: str) -> str:
    return f"{node_id}-btn-{button_id}"


def default_handle(node_id: str) -> str:
    return f"{node_id}-default"


def condition_handle(node_id: str, group_id: str) -> str:
    return f"{node_id}-cond-{group_id}"


def else_handle(node_id: str) -> str:
    return f"{node_id}-else"


# === SHARED CONFIG RECORDS ===


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


ComparisonOperator = Literal[
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "greater_than",
    "less_than",
    "is_set",
    "is_empty",
    "starts_with",
    "ends_with",
    "matches_regex",
    "not_matches_regex",
]

# Operators that ignore the comparison value
UNARY_OPERATORS = frozenset({"is_set", "is_empty"})


class ConditionComparison(FlowModel):
    """A single variable test inside a condition group."""

    id: str = ""
    variable_name: str = Field(description="Variable to test (raw stored value)")
    operator: ComparisonOperator
    value: str | None = Field(default=None, description="Comparison value (templated)")


class ConditionGroup(FlowModel):
    """Comparisons combined by one logical operator; one outgoing handle per group."""

    id: str
    comparisons: list[ConditionComparison] = Field(default_factory=list)
    logical_operator: LogicalOperator = LogicalOperator.AND


class ButtonConfig(FlowModel):
    """One choice of an input-buttons node."""

    id: str
    label: str
    value: str | None = Field(default=None, description="Stored instead of label when set")
    description: str | None = None
    save_variable: str | None = None
    redirect_url: str | None = None

    @property
    def stored_value(self) -> str:
        return self.value or self.label


class InitialVariable(FlowModel):
    name: str
    default_value: str = ""


class AuthCredentials(FlowModel):
    username: str | None = None
    password: str | None = None
    header_name: str | None = None
    header_value: str | None = None


# === NODE CONFIGS ===


class TextBubbleConfig(FlowModel):
    message: str = ""


class NumberBubbleConfig(FlowModel):
    number: str = ""


class MediaBubbleConfig(FlowModel):
    url: str = Field(
        default="",
        validation_alias=AliasChoices(
            "url", "ImageURL", "VideoURL", "AudioURL", "FileURL", "DocumentURL"
        ),
    )
    alt: str | None = Field(
        default=None,
        validation_alias=AliasChoices("alt", "ImageAlt", "VideoAlt", "AudioAlt", "FileAlt"),
    )


class InputConfig(FlowModel):
    prompt: str = ""
    placeholder: str | None = None
    save_variable: str | None = None
    validation: str | None = Field(
        default=None,
        description="Registered validator name overriding the one implied by the node type",
    )
    retry_message: str | None = None
    min: float | None = None
    max: float | None = None


class ButtonsConfig(FlowModel):
    prompt: str = ""
    buttons: list[ButtonConfig] = Field(default_factory=list)
    save_variable: str | None = None


class ConditionConfig(FlowModel):
    conditions: list[ConditionGroup] = Field(default_factory=list)


class SetVariableValueType(str, Enum):
    CUSTOM = "custom"
    EMPTY = "empty"
    NOW = "now"
    TODAY = "today"
    YESTERDAY = "yesterday"
    TOMORROW = "tomorrow"
    RANDOM = "random"


class SetVariableConfig(FlowModel):
    variable_name: str = ""
    value_type: SetVariableValueType = SetVariableValueType.CUSTOM
    value: str = Field(default="", validation_alias=AliasChoices("value", "customValue"))
    save_in_results: bool = False
    execute_on_client: bool = False


class ScriptConfig(FlowModel):
    code: str = ""
    execute_on_server: bool = False


class StartConfig(FlowModel):
    initial_variables: list[InitialVariable] = Field(default_factory=list)


class WebhookConfig(FlowModel):
    response_variable: str = "webhookData"
    authentication: Literal["none", "basic", "header"] = "none"
    auth_credentials: AuthCredentials = Field(default_factory=AuthCredentials)


class KeyValuePair(FlowModel):
    name: str = ""
    value: str = ""


class HttpRequestConfig(FlowModel):
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "GET"
    url: str = ""
    headers: list[KeyValuePair] = Field(default_factory=list)
    query_params: list[KeyValuePair] = Field(default_factory=list)
    body: str | None = Field(
        default=None, validation_alias=AliasChoices("body", "bodyJson", "bodyRaw")
    )
    timeout: int = Field(default=30_000, ge=1, description="Request timeout in milliseconds")
    follow_redirects: bool = True
    response_variable: str = "httpResponse"

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @field_validator("headers", mode="before")
    @classmethod
    def _headers_from_mapping(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return [{"name": k, "value": v} for k, v in value.items()]
        return value


# === NODES ===


class BaseNode(FlowModel):
    id: str = Field(description="Node identifier, unique within the flow")


class TextBubbleNode(BaseNode):
    type: Literal["bubble-text"] = "bubble-text"
    config: TextBubbleConfig = Field(default_factory=TextBubbleConfig)


class NumberBubbleNode(BaseNode):
    type: Literal["bubble-number"] = "bubble-number"
    config: NumberBubbleConfig = Field(default_factory=NumberBubbleConfig)


class MediaBubbleNode(BaseNode):
    type: Literal["bubble-image", "bubble-video", "bubble-audio", "bubble-document"]
    config: MediaBubbleConfig = Field(default_factory=MediaBubbleConfig)

    @property
    def media_kind(self) -> str:
        return self.type.removeprefix("bubble-")


class InputNode(BaseNode):
    type: Literal[
        "input-text",
        "input-number",
        "input-phone",
        "input-mail",
        "input-webSite",
        "input-image",
        "input-video",
        "input-audio",
        "input-document",
    ]
    config: InputConfig = Field(default_factory=InputConfig)


class ButtonsNode(BaseNode):
    type: Literal["input-buttons"] = "input-buttons"
    config: ButtonsConfig = Field(default_factory=ButtonsConfig)

    def find_button(self, button_id: str | None, text: str | None = None) -> ButtonConfig | None:
        """Resolve a choice by id, falling back to a case-insensitive label/value match."""
        buttons = self.config.buttons
        if button_id:
            for button in buttons:
                if button.id == button_id:
                    return button
        if text:
            wanted = text.strip().casefold()
            for button in buttons:
                if wanted in (button.label.strip().casefold(), button.stored_value.casefold()):
                    return button
        return None


class ConditionNode(BaseNode):
    type: Literal["condition"] = "condition"
    config: ConditionConfig = Field(default_factory=ConditionConfig)


class SetVariableNode(BaseNode):
    type: Literal["set-variable"] = "set-variable"
    config: SetVariableConfig = Field(default_factory=SetVariableConfig)


class ScriptNode(BaseNode):
    type: Literal["script"] = "script"
    config: ScriptConfig = Field(default_factory=ScriptConfig)


class StartNode(BaseNode):
    type: Literal["start"] = "start"
    config: StartConfig = Field(default_factory=StartConfig)


class WebhookNode(BaseNode):
    type: Literal["webhook"] = "webhook"
    config: WebhookConfig = Field(default_factory=WebhookConfig)


class HttpRequestNode(BaseNode):
    type: Literal["http-request"] = "http-request"
    config: HttpRequestConfig = Field(default_factory=HttpRequestConfig)


Node = Annotated[
    TextBubbleNode
    | NumberBubbleNode
    | MediaBubbleNode
    | InputNode
    | ButtonsNode
    | ConditionNode
    | SetVariableNode
    | ScriptNode
    | StartNode
    | WebhookNode
    | HttpRequestNode,
    Field(discriminator="type"),
]

# Nodes that own their exits: the container fall-through is not taken after them
BRANCHING_NODES = (ButtonsNode, ConditionNode)


def node_handles(node: BaseNode) -> set[str]:
    """All source handles a node exposes."""
    if isinstance(node, ButtonsNode):
        handles = {button_handle(node.id, b.id) for b in node.config.buttons}
        handles.add(default_handle(node.id))
        return handles
    if isinstance(node, ConditionNode):
        handles = {condition_handle(node.id, g.id) for g in node.config.conditions}
        handles.add(else_handle(node.id))
        return handles
    return set()


# === GRAPH ===


class Container(FlowModel):
    """Ordered list of nodes with a single entry point (a "block")."""

    id: str
    name: str | None = None
    nodes: list[Node] = Field(default_factory=list)


class Edge(FlowModel):
    id: str | None = None
    source: str = Field(description="Source container id")
    source_handle: str | None = Field(
        default=None, description="Node exit; None means container fall-through"
    )
    target: str = Field(description="Target container id")


class FlowDefinition(FlowModel):
    """Immutable published version of a chatbot flow."""

    id: str
    version: int = 1
    name: str | None = None
    start_container_id: str | None = None
    containers: list[Container] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    settings: dict[str, Any] = Field(default_factory=dict)


__all__ = [
    "FlowModel",
    "LogicalOperator",
    "ComparisonOperator",
    "UNARY_OPERATORS",
    "ConditionComparison",
    "ConditionGroup",
    "ButtonConfig",
    "InitialVariable",
    "AuthCredentials",
    "TextBubbleConfig",
    "NumberBubbleConfig",
    "MediaBubbleConfig",
    "InputConfig",
    "ButtonsConfig",
    "ConditionConfig",
    "SetVariableValueType",
    "SetVariableConfig",
    "ScriptConfig",
    "StartConfig",
    "WebhookConfig",
    "BaseNode",
    "TextBubbleNode",
    "NumberBubbleNode",
    "MediaBubbleNode",
    "InputNode",
    "ButtonsNode",
    "ConditionNode",
    "SetVariableNode",
    "ScriptNode",
    "StartNode",
    "WebhookNode",
    "Node",
    "BRANCHING_NODES",
    "node_handles",
    "Container",
    "Edge",
    "FlowDefinition",
    "button_handle",
    "default_handle",
    "condition_handle",
    "else_handle",
]
