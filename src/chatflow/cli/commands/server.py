"""Server command to start API."""

import os
from pathlib import Path

import typer
import uvicorn

from chatflow.config.loader import SettingsLoader
from chatflow.core.errors import ConfigError
from chatflow.server.api import CONFIG_PATH_ENV

app = typer.Typer(help="Start API server")


@app.callback(invoke_without_command=True)
def start_server(
    config: Path = typer.Option(
        ..., "--config", "-c", help="Path to chatflow.yaml", exists=True
    ),
    host: str = typer.Option("0.0.0.0", "--host", "-h"),
    port: int = typer.Option(8000, "--port", "-p"),
    reload: bool = typer.Option(False, "--reload"),
):
    """Start the Chatflow API server."""

    # 1. Validate settings
    try:
        settings = SettingsLoader.load(config)
    except (ConfigError, FileNotFoundError) as e:
        typer.echo(f"Invalid config: {e}", err=True)
        raise typer.Exit(1)

    # 2. Set Env Vars for the server process (it loads settings from env)
    os.environ[CONFIG_PATH_ENV] = str(config.absolute())

    typer.echo(f"Starting Chatflow Server on http://{host}:{port}")
    typer.echo(f"   Config: {config}")
    typer.echo(f"   Sessions: {settings.persistence.backend}")

    try:
        uvicorn.run(
            "chatflow.server.api:app",
            host=host,
            port=port,
            reload=reload,
            log_level=settings.logging.level.lower(),
        )
    except Exception as e:
        typer.echo(f"Server failed: {e}", err=True)
        raise typer.Exit(1)
