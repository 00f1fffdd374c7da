"""CLI for clirun-mcp tool servers."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

from rich.console import Console
from rich.table import Table
import typer

app = typer.Typer(
    name="clirun-mcp",
    help="clirun-mcp tool server CLI",
    add_completion=False,
)
console = Console()


@app.command()
def serve(
    server: str = typer.Option(None, "--server", "-s", help="Tool server profile (process, git)"),
    config_path: Path = typer.Option(None, "--config", "-c", help="Path to clirun.toml"),
    log_level: str = typer.Option(None, "--log-level", "-l", help="Override log level"),
) -> None:
    """Run a tool server on stdio."""
    from clirun_mcp.server import main

    argv = []
    if server:
        argv += ["--server", server]
    if config_path:
        argv += ["--config", str(config_path)]
    if log_level:
        argv += ["--log-level", log_level]
    main(argv)


@app.command()
def tools(
    server: str = typer.Argument(..., help="Tool server profile"),
    config_path: Path = typer.Option(None, "--config", "-c", help="Path to clirun.toml"),
) -> None:
    """Show which tools a server registers at startup and which are deferred."""
    from clirun_mcp.config import load_config
    from clirun_mcp.server import ToolServer
    from clirun_mcp.tools import get_profile

    try:
        profile = get_profile(server)
    except ValueError as e:
        console.print(f"[red]✗[/] {e}")
        raise typer.Exit(1)

    tool_server = ToolServer(load_config(config_path), profile)
    registered = set(tool_server.tool_names())

    table = Table(title=f"{server} tools")
    table.add_column("Tool", style="bold", no_wrap=True)
    table.add_column("Core", no_wrap=True)
    table.add_column("State", no_wrap=True)
    table.add_column("Description")
    for definition in profile.definitions:
        if definition.name in registered:
            state = "[green]registered[/]"
        elif tool_server.lazy is not None and any(
            t["name"] == definition.name for t in tool_server.lazy.list_lazy()
        ):
            state = "[yellow]deferred[/]"
        else:
            state = "[dim]filtered[/]"
        table.add_row(definition.name, "yes" if definition.is_core else "", state, definition.description)
    for name in sorted(registered - {d.name for d in profile.definitions}):
        table.add_row(name, "built-in", "[green]registered[/]", "")
    console.print(table)


@app.command("check-policy")
def check_policy(
    command: str = typer.Argument(..., help="Command to check"),
    server: str = typer.Option("process", "--server", "-s", help="Server identity"),
    config_path: Path = typer.Option(None, "--config", "-c", help="Path to clirun.toml"),
) -> None:
    """Check a command against the effective allow-list."""
    from clirun_mcp.config import load_config
    from clirun_mcp.errors import PolicyDeniedError
    from clirun_mcp.policy import PolicyGate
    from clirun_mcp.server import build_policy_source

    gate = PolicyGate(build_policy_source(load_config(config_path)))
    allowed = gate.allowed_commands(server)
    try:
        gate.assert_allowed_by_policy(command, server)
    except PolicyDeniedError as e:
        console.print(f"[red]✗[/] {e}")
        raise typer.Exit(1)

    if allowed is None:
        console.print(f"[green]✓[/] {command} allowed (no allow-list configured for {server})")
    else:
        console.print(f"[green]✓[/] {command} allowed for {server}")


@app.command("exec")
def exec_command(
    command: str = typer.Argument(..., help="Executable"),
    args: list[str] = typer.Argument(None, help="Arguments"),
    timeout: float = typer.Option(60.0, "--timeout", "-t", help="Timeout in seconds"),
    cwd: Path = typer.Option(None, "--cwd", help="Working directory"),
) -> None:
    """Run a command through the process runner and print the RunResult as JSON."""
    from clirun_mcp.errors import InputRejectedError, SpawnError
    from clirun_mcp.runner import ProcessRunner

    try:
        result = asyncio.run(ProcessRunner().run(command, args or [], cwd=cwd, timeout=timeout))
    except InputRejectedError as e:
        console.print(f"[red]✗[/] {e}")
        raise typer.Exit(2)
    except SpawnError as e:
        console.print(f"[red]✗[/] {e}")
        raise typer.Exit(127)

    console.print_json(json.dumps(result.to_dict()))
    raise typer.Exit(result.exit_code)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
