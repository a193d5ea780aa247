"""Main CLI entry point for Chatflow"""

import typer

from chatflow.__version__ import __version__
from chatflow.cli.commands import chat as chat_module
from chatflow.cli.commands import server as server_module
from chatflow.cli.commands import validate as validate_module

app = typer.Typer(
    name="chatflow",
    help="Chatflow - conversational flow interpreter for chatbot graphs",
    add_completion=False,
)

# Register subcommands
app.add_typer(server_module.app, name="server", help="Start the Chatflow API server")
app.command(name="chat", help="Chat with a flow file in the terminal")(chat_module.run_chat)
app.command(name="validate", help="Check flow files for graph errors")(validate_module.validate)


def version_callback(value: bool) -> None:
    """Print version and exit"""
    if value:
        typer.echo(f"Chatflow version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """Chatflow - conversational flow interpreter for chatbot graphs"""
    pass


def cli() -> None:
    """Entry point for CLI"""
    app()


if __name__ == "__main__":
    cli()
