"""Outbound message records shared by the engine, session state and transports."""

from typing import Annotated, Literal

from pydantic import BaseModel, Field

from chatflow.core.variables import extract_links


class LinkSpan(BaseModel):
    """Inline [label](url) link inside a text message."""

    label: str
    url: str
    start: int
    end: int


class TextMessage(BaseModel):
    kind: Literal["text"] = "text"
    text: str
    links: list[LinkSpan] = Field(default_factory=list)
    node_id: str | None = None

    @classmethod
    def from_text(cls, text: str, node_id: str | None = None) -> "TextMessage":
        links = [
            LinkSpan(label=link.label, url=link.url, start=link.start, end=link.end)
            for link in extract_links(text)
        ]
        return cls(text=text, links=links, node_id=node_id)


class MediaMessage(BaseModel):
    kind: Literal["image", "video", "audio", "document"]
    url: str
    alt: str = ""
    node_id: str | None = None


OutboundMessage = Annotated[TextMessage | MediaMessage, Field(discriminator="kind")]


class ButtonOption(BaseModel):
    """A choice offered to the end user."""

    id: str
    label: str
    value: str
    description: str | None = None


class SideEffects(BaseModel):
    """Effects for the transport to carry out, distinct from messages."""

    redirect_url: str | None = None

    @property
    def empty(self) -> bool:
        return self.redirect_url is None


class ClientContext(BaseModel):
    """Browser hints sent by the transport; exposed to client-mode scripts."""

    url: str = ""
    user_agent: str = ""
    language: str = ""
    referrer: str = ""
    title: str = ""


class MessageLogEntry(BaseModel):
    """One line of the conversation transcript."""

    role: Literal["bot", "user"]
    message: OutboundMessage | None = None
    text: str | None = None
    button_id: str | None = None
