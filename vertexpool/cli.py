"""
vertexpool CLI - keep a pool of provisioned cloud projects per billing account.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError as SettingsValidationError
from rich.console import Console
from rich.panel import Panel

from .core import PoolCore
from .errors import ReconcileError
from .formatters import PoolFormatter
from .policy import KeyGenerationMode, KeyQuestion
from .reconciler import failure_lines
from .settings import VertexPoolSettings, get_settings

# Setup
app = typer.Typer(
    name="vertexpool",
    help="Keep a fixed-size pool of fully provisioned projects under a billing account",
    add_completion=False,
)
console = Console()
formatter = PoolFormatter(console)


def configure_logging():
    """Configure logging based on settings."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


# Configure logging on module import
configure_logging()


def interactive_ask(question: KeyQuestion) -> bool:
    """Answer key policy questions on the terminal; defaults when not a TTY."""
    if not sys.stdin.isatty():
        return question.default
    return typer.confirm(question.prompt, default=question.default)


def _build_settings(**overrides) -> VertexPoolSettings:
    """Apply command-line overrides on top of the loaded settings, re-running validation."""
    updates = {key: value for key, value in overrides.items() if value is not None}
    try:
        return VertexPoolSettings.model_validate({**get_settings().model_dump(), **updates})
    except SettingsValidationError as e:
        _handle_command_error(e, "configuration")


def _initialize_core(settings: VertexPoolSettings) -> PoolCore:
    """Initialize PoolCore with the interactive key policy answers.

    Args:
        settings: Effective settings for this command

    Returns:
        Configured PoolCore instance
    """
    return PoolCore(settings=settings, ask=interactive_ask)


def _create_command_panel(title: str, color: str, settings: VertexPoolSettings) -> Panel:
    """Create a Rich Panel for command display."""
    return Panel.fit(
        f"[bold {color}]{title}[/bold {color}]\n"
        f"Billing account: {settings.billing_account or 'auto-detect'}\n"
        f"Target size: {settings.target_size}",
        border_style=color,
    )


def _handle_command_error(e: Exception, command_type: str) -> None:
    """Handle command errors with appropriate formatting.

    Args:
        e: Exception that occurred
        command_type: Type of command (for error message context)

    Raises:
        SystemExit: Always exits with code 1
    """
    console.print(f"\n[bold red]✗ {command_type.capitalize()} failed:[/bold red] {e}")

    if isinstance(e, ReconcileError):
        for line in failure_lines(e):
            console.print(f"  [dim]• {line}[/dim]")
        if e.pool is not None:
            console.print(
                f"[dim]Progress kept: {len(e.pool.members)}/{e.pool.target_size} member(s). "
                f"Re-running is safe.[/dim]"
            )

    raise typer.Exit(code=1)


def _run_command(
    command_name: str,
    panel_title: str,
    panel_color: str,
    core_method: str,
    success_handler,
    settings: VertexPoolSettings,
    **kwargs,
):
    """Execute a vertexpool command with common setup and error handling.

    Args:
        command_name: Command name for error messages
        panel_title: Title for the command panel
        panel_color: Border color for the panel
        core_method: Name of the PoolCore coroutine to call
        success_handler: Callable that takes the result and prints it
        settings: Effective settings
        **kwargs: Additional keyword arguments for the core method
    """
    console.print(_create_command_panel(panel_title, panel_color, settings))

    try:
        core = _initialize_core(settings)

        async def _main():
            await core.prepare()
            return await getattr(core, core_method)(**kwargs)

        result = asyncio.run(_main())
        success_handler(result)
    except Exception as e:
        _handle_command_error(e, command_name)


@app.command()
def status(
    billing_account: Optional[str] = typer.Option(None, "--billing-account", "-b", help="Billing account id (overrides .env)"),
    target: Optional[int] = typer.Option(None, "--target", "-t", help="Target pool size"),
):
    """Show API and key status of every project in the pool."""

    settings = _build_settings(billing_account=billing_account, target_size=target)

    _run_command(
        command_name="status",
        panel_title="vertexpool Status",
        panel_color="cyan",
        core_method="status",
        success_handler=formatter.print_summary,
        settings=settings,
    )


@app.command()
def reconcile(
    billing_account: Optional[str] = typer.Option(None, "--billing-account", "-b", help="Billing account id (overrides .env)"),
    target: Optional[int] = typer.Option(None, "--target", "-t", help="Target pool size"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-c", help="Projects provisioned at once"),
    key_policy: Optional[KeyGenerationMode] = typer.Option(None, "--key-policy", "-k", help="Key generation policy when local keys exist"),
    prune: Optional[bool] = typer.Option(None, "--prune/--no-prune", help="Delete older remote keys after generating one"),
    key_dir: Optional[Path] = typer.Option(None, "--key-dir", help="Directory for key files"),
    resume: bool = typer.Option(False, "--resume", help="Seed membership from the last checkpoint"),
):
    """Refresh existing projects and create new ones up to the target size."""

    settings = _build_settings(
        billing_account=billing_account,
        target_size=target,
        concurrency=concurrency,
        key_policy=key_policy.value if key_policy else None,
        prune_remote_keys=prune,
        key_dir=key_dir,
    )

    def _handle_success(pool):
        console.print("\n[bold green]✓ Pool reconciled![/bold green]")
        formatter.print_pool(pool)

    _run_command(
        command_name="reconcile",
        panel_title="vertexpool Reconcile",
        panel_color="blue",
        core_method="reconcile",
        success_handler=_handle_success,
        settings=settings,
        resume=resume,
    )


@app.command()
def rebuild(
    billing_account: Optional[str] = typer.Option(None, "--billing-account", "-b", help="Billing account id (overrides .env)"),
    target: Optional[int] = typer.Option(None, "--target", "-t", help="Target pool size"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-c", help="Projects provisioned at once"),
    yes: bool = typer.Option(False, "--yes", help="Confirm unlinking every current project from billing"),
):
    """Unlink all projects from billing, then create a fresh pool."""

    settings = _build_settings(billing_account=billing_account, target_size=target, concurrency=concurrency)

    confirmed = yes or typer.confirm(
        "This unlinks billing from EVERY project in the pool and creates new ones. Continue?",
        default=False,
    )
    if not confirmed:
        console.print("[yellow]Rebuild cancelled[/yellow]")
        raise typer.Exit(code=1)

    def _handle_success(pool):
        console.print("\n[bold green]✓ Pool rebuilt![/bold green]")
        formatter.print_pool(pool)

    _run_command(
        command_name="rebuild",
        panel_title="vertexpool Rebuild",
        panel_color="red",
        core_method="rebuild",
        success_handler=_handle_success,
        settings=settings,
        confirmed=confirmed,
    )


@app.command()
def quota(
    billing_account: Optional[str] = typer.Option(None, "--billing-account", "-b", help="Billing account id (overrides .env)"),
    target: Optional[int] = typer.Option(None, "--target", "-t", help="Target pool size"),
):
    """Best-effort check of how many projects the billing account holds."""

    settings = _build_settings(billing_account=billing_account, target_size=target)

    _run_command(
        command_name="quota check",
        panel_title="vertexpool Quota",
        panel_color="cyan",
        core_method="quota_check",
        success_handler=formatter.print_quota,
        settings=settings,
    )


@app.command()
def version():
    """Show vertexpool version."""
    from . import __version__

    console.print(f"vertexpool version: [bold]{__version__}[/bold]")


if __name__ == "__main__":
    app()
