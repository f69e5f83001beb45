"""CLI commands for safeshell."""

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from safeshell import __version__, __logo__

app = typer.Typer(
    name="safeshell",
    help=f"{__logo__} safeshell - Sandboxed shell execution with permission prompts",
    no_args_is_help=True,
)

console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} safeshell v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """safeshell - Sandboxed shell execution with permission prompts."""
    pass


# ============================================================================
# Retry
# ============================================================================


@app.command()
def retry(
    pending_id: str = typer.Option(..., "--id", help="Pending request id from the BLOCKED prompt"),
    choice: int = typer.Option(..., "--choice", help="1=once, 2=always, 3=session, 4=deny"),
):
    """Resolve a blocked command and re-run its script."""
    from safeshell.exec.retry import retry_command

    raise typer.Exit(asyncio.run(retry_command(pending_id, choice)))


@app.command("retry-path")
def retry_path(
    pending_id: str = typer.Option(..., "--id", help="Pending request id from the PATH BLOCKED prompt"),
    choice: str = typer.Option(..., "--choice", help="r|w|rw + 1|2|3 (+d for directory), or 4 to deny"),
):
    """Resolve a blocked path access and re-run its script."""
    from safeshell.exec.retry import retry_path as run_retry_path

    raise typer.Exit(asyncio.run(run_retry_path(pending_id, choice)))


# ============================================================================
# Run
# ============================================================================


@app.command()
def run(
    file: Path = typer.Argument(..., help="Script to run in the sandbox"),
    cwd: Path = typer.Option(None, "--cwd", help="Working directory (default: current)"),
    timeout: float = typer.Option(None, "--timeout", "-t", help="Timeout in seconds"),
):
    """Run a script under the loaded permissions."""
    from safeshell.config.loader import load_session_config
    from safeshell.exec.errors import NetworkBlockedError, SafeShellError
    from safeshell.exec.executor import execute_script
    from safeshell.exec.violations import ErrorHandler, escalate_result
    from safeshell.session.manager import SessionManager
    from safeshell.utils.helpers import get_error_log_path

    if not file.is_file():
        err_console.print(f"[red]Script not found: {file}[/red]")
        raise typer.Exit(1)

    work_dir = str((cwd or Path.cwd()).resolve())
    code = file.read_text(encoding="utf-8")
    config, _ = load_session_config(work_dir)

    sessions = SessionManager(work_dir)
    session = sessions.create(cwd=work_dir)

    try:
        result = asyncio.run(execute_script(
            code,
            config,
            session_manager=sessions,
            session=session,
            cwd=work_dir,
            timeout=timeout,
            passthrough=True,
        ))
    except SafeShellError as e:
        ErrorHandler("Execution Error", get_error_log_path(), original_command=str(file)).handle(e)

    timeout_ms = int(timeout * 1000) if timeout else None
    if escalate_result(result, work_dir, timeout_ms):
        raise typer.Exit(1)
    if result.blocked_host:
        blocked = NetworkBlockedError(result.blocked_host)
        err_console.print(f"[red]{blocked.message}[/red]\n{blocked.suggestion}")
    raise typer.Exit(result.exit_code)


# ============================================================================
# Checks
# ============================================================================


@app.command("check-command")
def check_command(
    commands: list[str] = typer.Argument(..., help="Commands to check"),
    cwd: Path = typer.Option(None, "--cwd", help="Working directory (default: current)"),
):
    """Show whether commands may run under the loaded config."""
    from safeshell.config.loader import load_session_config
    from safeshell.exec.permissions import check_commands
    from safeshell.exec.types import PermissionAllowed, PermissionNotFound

    work_dir = str((cwd or Path.cwd()).resolve())
    config, _ = load_session_config(work_dir)
    result = asyncio.run(check_commands({c: c for c in commands}, config, work_dir))

    table = Table(title="Command permissions")
    table.add_column("Command", style="cyan")
    table.add_column("Result")
    table.add_column("Resolved")

    for name, outcome in result.results.items():
        if isinstance(outcome, PermissionAllowed):
            table.add_row(name, "[green]allowed[/green]", outcome.resolved_path)
        elif isinstance(outcome, PermissionNotFound):
            table.add_row(name, "[yellow]not found[/yellow]", outcome.command)
        else:
            table.add_row(name, "[red]not allowed[/red]", outcome.command)

    console.print(table)
    raise typer.Exit(0 if result.all_allowed else 1)


@app.command("check-path")
def check_path(
    path: str = typer.Argument(..., help="Path to check"),
    op: str = typer.Option("read", "--op", help="read or write"),
    cwd: Path = typer.Option(None, "--cwd", help="Working directory (default: current)"),
):
    """Show whether a path may be read or written."""
    from safeshell.config.loader import load_session_config
    from safeshell.exec.permissions import check_path as run_check_path

    if op not in ("read", "write"):
        console.print("[red]--op must be read or write[/red]")
        raise typer.Exit(1)

    work_dir = str((cwd or Path.cwd()).resolve())
    config, _ = load_session_config(work_dir)
    result = run_check_path(path, op, config, work_dir)

    if result.allowed:
        console.print(f"[green]✓[/green] {op} allowed: {result.resolved_path}")
        raise typer.Exit(0)
    console.print(f"[red]✗[/red] {op} denied: {result.resolved_path} ({result.reason})")
    raise typer.Exit(1)


@app.command()
def validate(
    cwd: Path = typer.Option(None, "--cwd", help="Working directory (default: current)"),
):
    """Check the effective config for dangerous settings."""
    from safeshell.config.loader import load_session_config
    from safeshell.config.schema import validate_config

    work_dir = str((cwd or Path.cwd()).resolve())
    config, project_dir = load_session_config(work_dir)
    result = validate_config(config)

    console.print(f"Project: [cyan]{project_dir}[/cyan]")
    for warning in result.warnings:
        console.print(f"[yellow]warning[/yellow] {warning}")
    for error in result.errors:
        console.print(f"[red]error[/red] {error}")

    if result.errors:
        raise typer.Exit(1)
    console.print("[green]✓[/green] Config OK")


# ============================================================================
# Maintenance
# ============================================================================


@app.command()
def clean(
    max_age_hours: float = typer.Option(24.0, "--max-age", help="Remove pending requests older than this (hours)"),
):
    """Remove stale pending requests."""
    from safeshell.exec.pending import cleanup_stale_pending
    from safeshell.utils.helpers import get_temp_root

    removed = cleanup_stale_pending(max_age_hours * 3600)
    console.print(f"Removed {removed} pending request(s) from {get_temp_root()}")


if __name__ == "__main__":
    app()
