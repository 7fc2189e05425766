import asyncio
import json
from pathlib import Path
import signal
from typing import Any

from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
import structlog
import typer

from .command import build_command
from .communicator import SSHCommunicator
from .config import ProvisioningConfig, Settings, load_config
from .errors import ConfigError, ProvisioningError
from .logging_config import setup_logging
from .output import ConsoleSink
from .provisioner import Provisioner, ProvisioningRequest

logger = structlog.get_logger(__name__)

EXIT_FAILURE = 1
EXIT_INVALID_CONFIG = 2

app = typer.Typer(no_args_is_help=True)


@app.callback()
def callback():
    """
    Provision machines with masterless Salt over SSH
    """


def _load_or_exit(console: Console, config: Path) -> ProvisioningConfig:
    try:
        return load_config(config)
    except ConfigError as e:
        console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
        raise typer.Exit(code=EXIT_INVALID_CONFIG) from None
    except ValidationError as e:
        console.print(f"[bold red]Invalid configuration:[/bold red] {escape(str(e))}")
        raise typer.Exit(code=EXIT_INVALID_CONFIG) from None


def _load_provider_state(path: Path | None) -> dict[str, Any]:
    if path is None:
        return {}
    try:
        state = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigError(f"Unable to read provider state {path}: {e}") from e
    if not isinstance(state, dict):
        raise ConfigError(f"Provider state {path} must be a JSON object")
    return state


async def run_apply(provisioner: Provisioner) -> None:
    """Run ``provisioner`` and cancel it cleanly on SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()
    cancel_event = asyncio.Event()

    def handle_signal():
        logger.info("signal_received")
        cancel_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal)
    try:
        await provisioner.apply(cancel_event)
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)


@app.command()
def apply(
    config: Path = typer.Option(..., "--config", "-c", help="Provisioning config (YAML)"),
    host: str = typer.Option(..., "--host", "-H", help="Target host name or address"),
    user: str | None = typer.Option(None, "--user", "-u", help="SSH user"),
    port: int = typer.Option(22, "--port", "-p", help="SSH port"),
    identity_file: Path | None = typer.Option(None, "--identity-file", "-i"),
    state: Path | None = typer.Option(
        None, "--state", "-s", help="Provider state of the machine (JSON), merged into grains"
    ),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON"),
):
    """Stage Salt content on HOST and run salt-call"""
    settings = Settings()
    console = Console()

    provisioning_config = _load_or_exit(console, config)
    setup_logging(
        settings,
        json_logs=json_logs,
        secrets=[provisioning_config.sudo_password.get_secret_value()],
    )

    try:
        provider_state = _load_provider_state(state)
    except ConfigError as e:
        console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
        raise typer.Exit(code=EXIT_INVALID_CONFIG) from None

    comm = SSHCommunicator(
        host,
        user=user,
        port=port,
        identity_file=identity_file,
        timeout=settings.connect_timeout,
    )
    request = ProvisioningRequest(
        config=provisioning_config,
        provider_state=provider_state,
        sink=ConsoleSink(console),
    )
    provisioner = Provisioner(request, comm)

    with structlog.contextvars.bound_contextvars(host=host):
        try:
            asyncio.run(run_apply(provisioner))
        except ProvisioningError as e:
            console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
            raise typer.Exit(code=EXIT_FAILURE) from None

    console.print(f"[bold green]✓ {escape(host)} provisioned successfully![/bold green]")


@app.command()
def validate(
    config: Path = typer.Option(..., "--config", "-c", help="Provisioning config (YAML)"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Validate a provisioning config without connecting anywhere"""
    console = Console()
    provisioning_config = _load_or_exit(console, config)

    if json_output:
        typer.echo(json.dumps(provisioning_config.model_dump(mode="json"), indent=2))
        return

    console.print("[bold green]✓ Configuration is valid[/bold green]")
    console.print(f"State tree: [cyan]{escape(str(provisioning_config.local_state_tree))}[/cyan]")


@app.command("render-command")
def render_command(
    config: Path = typer.Option(..., "--config", "-c", help="Provisioning config (YAML)"),
):
    """Print the salt-call command an apply would run"""
    console = Console()
    provisioning_config = _load_or_exit(console, config)
    typer.echo(build_command(provisioning_config))


def main() -> None:
    app()
