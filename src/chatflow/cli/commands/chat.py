"""Chat command for interactive sessions."""

import asyncio
from pathlib import Path

import typer


def run_chat(
    flow: Path = typer.Argument(..., help="Flow file (.yaml/.yml/.json)", exists=True),
    config: Path | None = typer.Option(
        None, "--config", "-c", help="Path to chatflow.yaml or config directory"
    ),
    variable: list[str] = typer.Option(
        [], "--var", help="Initial variable as name=value (repeatable)"
    ),
    debug: bool = typer.Option(False, "--debug", help="Debug mode"),
    verbose: bool = typer.Option(False, "--verbose", help="Show variables after each turn"),
) -> None:
    """Start interactive chat session."""
    from chatflow.cli.chat_runner import ChatConfig, run_chat_session

    try:
        initial_variables = dict(_parse_variable(item) for item in variable)
    except ValueError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(2)

    chat_config = ChatConfig(
        flow_path=flow,
        config_path=config,
        initial_variables=initial_variables,
        debug=debug,
        verbose=verbose,
    )

    try:
        asyncio.run(run_chat_session(chat_config))
    except KeyboardInterrupt:
        pass
    except Exception as e:
        typer.echo(f"Fatal error: {e}", err=True)
        raise typer.Exit(1)


def _parse_variable(item: str) -> tuple[str, str]:
    name, sep, value = item.partition("=")
    if not sep or not name.strip():
        raise ValueError(f"Invalid --var '{item}', expected name=value")
    return name.strip(), value
