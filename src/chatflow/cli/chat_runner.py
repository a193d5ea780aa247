"""Interactive chat runner for Chatflow CLI."""

from dataclasses import dataclass, field
from pathlib import Path

from rich.console import Console
from rich.prompt import Prompt
from rich.text import Text

from chatflow.config.loader import SettingsLoader
from chatflow.core.errors import ConfigError, FlowValidationError
from chatflow.core.messages import MediaMessage, OutboundMessage
from chatflow.core.state import WAITING_FOR_BUTTONS
from chatflow.flow.loader import FlowLoader
from chatflow.observability.logging import setup_logging
from chatflow.persistence.memory import InMemoryFlowRepository
from chatflow.runtime.conversation import ConversationRuntime
from chatflow.runtime.messages import InboundPayload, TurnResponse


@dataclass
class ChatConfig:
    """Configuration for chat runner."""

    flow_path: Path
    config_path: Path | None = None
    initial_variables: dict[str, str] = field(default_factory=dict)
    verbose: bool = False
    debug: bool = False


class ChatRunner:
    """Interactive chat session runner.

    Loads one flow file into an in-memory repository, starts a session and
    relays console input until the conversation completes.
    """

    def __init__(self, config: ChatConfig, console: Console | None = None):
        self.config = config
        self.console = console or Console()
        self.runtime: ConversationRuntime | None = None
        self.flow_id: str | None = None
        self._running = False

    async def setup(self) -> None:
        """Load the flow and settings and build the runtime.

        Raises:
            ConfigError: If the flow or settings are invalid
        """
        from dotenv import load_dotenv

        load_dotenv()

        try:
            settings = SettingsLoader.load_or_default(self.config.config_path)
            definition = FlowLoader.load(self.config.flow_path)
            flows = InMemoryFlowRepository([definition])
        except (ConfigError, FlowValidationError) as e:
            self.console.print(f"[red]Invalid configuration: {e}[/]")
            raise

        setup_logging("DEBUG" if self.config.debug else "WARNING")
        self.flow_id = definition.id
        self.runtime = ConversationRuntime.from_settings(settings, flows=flows)

    async def start(self) -> None:
        """Run the conversation until it completes or the user quits."""
        if not self.runtime:
            await self.setup()
        assert self.runtime is not None and self.flow_id is not None

        response = await self.runtime.start_conversation(
            self.flow_id, initial_variables=self.config.initial_variables
        )
        self.console.print(f"Session ID: [green]{response.session_id}[/]")
        self.console.print("Type 'exit' or 'quit' to end session.\n")

        self._running = True
        while self._running:
            self._render(response)
            if response.status.value != "active":
                self.console.print("[yellow]Conversation ended.[/]")
                break
            user_input = Prompt.ask("[bold green]You[/]", console=self.console)
            if self._is_exit_command(user_input):
                self.console.print("\n[yellow]Goodbye![/]")
                break

            inbound = self._inbound(user_input, response)
            response = await self.runtime.handle_turn(response.session_id, inbound)
            if self.config.verbose:
                state = await self.runtime.get_session(response.session_id)
                self.console.print(f"[dim]variables: {state.variables}[/]")

    def _inbound(self, user_input: str, response: TurnResponse) -> InboundPayload:
        """Numbers pick a button when buttons are offered; anything else is text."""
        if response.waiting_for == WAITING_FOR_BUTTONS and user_input.strip().isdigit():
            index = int(user_input.strip()) - 1
            if 0 <= index < len(response.buttons):
                return InboundPayload(button_id=response.buttons[index].id)
        return InboundPayload(text=user_input)

    def _render(self, response: TurnResponse) -> None:
        for message in response.messages:
            self.console.print(self._format(message))
        for number, button in enumerate(response.buttons, start=1):
            self.console.print(f"  [cyan]{number}.[/] {button.label}", highlight=False)
        if response.side_effects and response.side_effects.redirect_url:
            self.console.print(f"[yellow]Redirect to {response.side_effects.redirect_url}[/]")
        if response.error_reference:
            self.console.print(f"[dim]reference {response.error_reference}[/]")

    def _format(self, message: OutboundMessage) -> Text:
        prefix = ("Bot > ", "bold blue")
        if isinstance(message, MediaMessage):
            kind = (f"[{message.kind}] ", "magenta")
            return Text.assemble(prefix, kind, message.url, f" ({message.alt})")
        return Text.assemble(prefix, message.text)

    def _is_exit_command(self, user_input: str) -> bool:
        """Check if input is an exit command."""
        return user_input.strip().lower() in ("quit", "exit", "q", "/quit", "/exit")

    async def cleanup(self) -> None:
        """Clean up resources."""
        self._running = False
        if self.runtime is not None:
            await self.runtime.close()
            self.runtime = None

    async def __aenter__(self) -> "ChatRunner":
        """Async context manager entry."""
        await self.setup()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.cleanup()


async def run_chat_session(config: ChatConfig) -> None:
    """Run an interactive chat session.

    Args:
        config: Chat configuration
    """
    async with ChatRunner(config) as runner:
        await runner.start()
