"""
process server: run an arbitrary command under the allow-list policy.

Security features:
- Command allow-list (CLIRUN_ALLOWED_COMMANDS / CLIRUN_PROCESS_ALLOWED_COMMANDS)
- Working directory restricted to allowed roots
- Exact argv, never a shell
- Execution timeout (exit code 124)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from clirun_mcp.guard import INPUT_LIMITS, assert_max_length
from clirun_mcp.output import ToolResponse, compact_dual_output
from clirun_mcp.registry import (
    HandlerRegistry,
    ServerProfile,
    ToolContext,
    ToolDefinition,
    object_schema,
    string_array_param,
    string_param,
)

SERVER_ID = "process"
MAX_TIMEOUT_MS = 600_000
DEFAULT_TIMEOUT_MS = 60_000

handlers = HandlerRegistry()


@dataclass
class ProcessRunOutput:
    command: str
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool
    truncated: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "command": self.command,
            "success": self.success,
            "exitCode": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration": self.duration_ms,
            "timedOut": self.timed_out,
        }
        if self.truncated:
            data["truncated"] = True
        return data


@dataclass
class ProcessRunCompact:
    """Status only; stdout/stderr dropped."""

    command: str
    success: bool
    exit_code: int
    duration_ms: int
    timed_out: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "success": self.success,
            "exitCode": self.exit_code,
            "duration": self.duration_ms,
            "timedOut": self.timed_out,
        }


def compact_run(data: ProcessRunOutput) -> ProcessRunCompact:
    return ProcessRunCompact(
        command=data.command,
        success=data.success,
        exit_code=data.exit_code,
        duration_ms=data.duration_ms,
        timed_out=data.timed_out,
    )


def _status_line(command: str, success: bool, exit_code: int, duration_ms: int, timed_out: bool) -> str:
    if timed_out:
        return f"{command}: TIMED OUT after {duration_ms}ms (exit code {exit_code})."
    if success:
        return f"{command}: success ({duration_ms}ms)."
    return f"{command}: exit code {exit_code} ({duration_ms}ms)."


def format_run(data: ProcessRunOutput) -> str:
    lines = [_status_line(data.command, data.success, data.exit_code, data.duration_ms, data.timed_out)]
    if data.stdout:
        lines.append(data.stdout.rstrip("\n"))
    if data.stderr:
        lines.append(f"stderr:\n{data.stderr.rstrip()}")
    if data.truncated:
        lines.append("(output truncated)")
    return "\n".join(lines)


def format_run_compact(data: ProcessRunCompact) -> str:
    return _status_line(data.command, data.success, data.exit_code, data.duration_ms, data.timed_out)


RUN_SCHEMA = object_schema(
    {
        "command": string_param("Command to run (e.g. 'node', 'python', 'echo')"),
        "args": string_array_param("Arguments to pass to the command"),
        "cwd": string_param("Working directory (default: server cwd)", limit="path"),
        "timeout": {
            "type": "integer",
            "minimum": 1,
            "maximum": MAX_TIMEOUT_MS,
            "default": DEFAULT_TIMEOUT_MS,
            "description": "Timeout in milliseconds (default: 60000, max: 600000)",
        },
        "env": {
            "type": "object",
            "additionalProperties": {"type": "string", "maxLength": INPUT_LIMITS["string"]},
            "description": "Additional environment variables",
        },
        "stdin": string_param("Text written to the command's stdin", limit="string"),
    },
    required=["command"],
)


@handlers.register("process.run", RUN_SCHEMA)
async def run_tool(ctx: ToolContext, args: dict[str, Any]) -> ToolResponse:
    """Run a command and return exit code, output, duration and timeout status."""
    command = args["command"]
    stdin = args.get("stdin")
    if stdin is not None:
        assert_max_length(stdin, "stdin", INPUT_LIMITS["string"])
    ctx.policy.assert_allowed_by_policy(command, ctx.server_id)
    cwd = args.get("cwd")
    work_dir = ctx.policy.assert_allowed_root(cwd or ".", ctx.server_id)
    timeout_ms = min(int(args.get("timeout", DEFAULT_TIMEOUT_MS)), MAX_TIMEOUT_MS)

    result = await ctx.runner.run(
        command,
        args.get("args", []),
        cwd=work_dir,
        timeout=timeout_ms / 1000,
        stdin=stdin,
        env=args.get("env"),
    )

    data = ProcessRunOutput(
        command=command,
        exit_code=result.exit_code,
        stdout=result.stdout,
        stderr=result.stderr,
        duration_ms=result.duration_ms,
        timed_out=result.timed_out,
        truncated=result.truncated,
    )
    raw_output = (result.stdout + "\n" + result.stderr).strip()
    return compact_dual_output(
        data,
        raw_output,
        format_run,
        compact_run,
        format_run_compact,
        force_full=args.get("compact") is False,
        ratio=ctx.compact_ratio,
    )


DEFINITIONS = [
    ToolDefinition(
        name="run",
        description="Runs a command and returns structured output "
        "(stdout, stderr, exit code, duration, timeout status).",
        handler_id="process.run",
        is_core=True,
    ),
]

PROFILE = ServerProfile(
    server_id=SERVER_ID,
    description="Run allow-listed commands with a timeout",
    definitions=DEFINITIONS,
    handlers=handlers,
)
