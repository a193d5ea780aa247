"""Validate command: report graph problems in flow files."""

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from chatflow.core.errors import ConfigError
from chatflow.flow.graph import validate_flow
from chatflow.flow.loader import FLOW_SUFFIXES, FlowLoader


def validate(
    paths: list[Path] = typer.Argument(..., help="Flow files or directories", exists=True),
) -> None:
    """Check flows for dangling or ambiguous edges and a missing start container.

    Exits with status 1 when any flow has an error; warnings do not fail.
    """
    console = Console()
    failed = False

    for path in _expand(paths):
        try:
            definition = FlowLoader.load(path)
        except ConfigError as e:
            console.print(f"[red]✗[/] {path}: {e}")
            failed = True
            continue

        issues = validate_flow(definition)
        errors = [issue for issue in issues if issue.severity == "error"]
        failed = failed or bool(errors)
        label = f"{path} (flow '{definition.id}' v{definition.version})"
        if not issues:
            console.print(f"[green]✓[/] {label}")
            continue

        marker = "[red]✗[/]" if errors else "[yellow]![/]"
        console.print(f"{marker} {label}")
        table = Table(show_header=True, header_style="bold")
        table.add_column("Severity")
        table.add_column("Code")
        table.add_column("Message")
        for issue in issues:
            style = "red" if issue.severity == "error" else "yellow"
            table.add_row(f"[{style}]{issue.severity}[/]", issue.code, issue.message)
        console.print(table)

    if failed:
        raise typer.Exit(1)


def _expand(paths: list[Path]) -> list[Path]:
    files: list[Path] = []
    for path in paths:
        if path.is_dir():
            files.extend(sorted(p for p in path.iterdir() if p.suffix in FLOW_SUFFIXES))
        else:
            files.append(path)
    return files
