"""
Error taxonomy for clirun-mcp.

Pre-spawn rejections (bad input, policy denial, spawn failure) are raised as
exceptions. A command that ran and failed is a RunResult; `classify_error`
turns it into a ToolError with a category and a recovery suggestion.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from clirun_mcp.runner import RunResult


class ClirunError(Exception):
    """Base class for all errors raised by the runtime."""
    pass


class InputRejectedError(ClirunError, ValueError):
    """Raised when a tool parameter fails validation before any process runs."""

    def __init__(self, message: str, field_name: str | None = None):
        super().__init__(message)
        self.field_name = field_name


class PolicyDeniedError(ClirunError):
    """Raised when the allow-list policy forbids a command or working directory."""

    def __init__(self, message: str, command: str | None = None, server_id: str | None = None):
        super().__init__(message)
        self.command = command
        self.server_id = server_id


class SpawnError(ClirunError):
    """Raised when the operating system could not start the child process."""

    def __init__(self, message: str, command: str):
        super().__init__(message)
        self.command = command


class CommandNotFoundError(SpawnError):
    """The executable does not exist on PATH."""
    pass


class SpawnPermissionError(SpawnError):
    """The executable exists but may not be executed."""
    pass


# Error categories reported back to the caller
COMMAND_NOT_FOUND = "command-not-found"
PERMISSION_DENIED = "permission-denied"
TIMEOUT = "timeout"
INVALID_INPUT = "invalid-input"
NOT_FOUND = "not-found"
NETWORK_ERROR = "network-error"
AUTHENTICATION_ERROR = "authentication-error"
CONFLICT = "conflict"
CONFIGURATION_ERROR = "configuration-error"
ALREADY_EXISTS = "already-exists"
COMMAND_FAILED = "command-failed"

SUGGESTIONS: dict[str, str] = {
    COMMAND_NOT_FOUND: "Install the command or check that it is on PATH.",
    PERMISSION_DENIED: "Check file permissions or run with the required privileges.",
    TIMEOUT: "Increase the timeout or narrow the scope of the operation.",
    INVALID_INPUT: "Check the arguments passed to the tool.",
    NOT_FOUND: "Verify that the file, ref or resource exists.",
    NETWORK_ERROR: "Check network connectivity and the remote address.",
    AUTHENTICATION_ERROR: "Check credentials or re-authenticate.",
    CONFLICT: "Resolve the conflict and retry.",
    CONFIGURATION_ERROR: "Check the tool's configuration files.",
    ALREADY_EXISTS: "Use a different name or remove the existing resource.",
    COMMAND_FAILED: "Inspect stderr for details.",
}

# Ordered: first match wins
_STDERR_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    (PERMISSION_DENIED, re.compile(r"permission denied|EACCES|operation not permitted", re.I)),
    (
        AUTHENTICATION_ERROR,
        re.compile(r"authentication failed|unauthorized|\b401\b|\b403\b|could not read username", re.I),
    ),
    (
        NETWORK_ERROR,
        re.compile(
            r"could not resolve host|connection refused|network is unreachable|ETIMEDOUT|ECONNRESET",
            re.I,
        ),
    ),
    (CONFLICT, re.compile(r"\bconflict\b|would be overwritten|not possible to fast-forward", re.I)),
    (ALREADY_EXISTS, re.compile(r"already exists", re.I)),
    (
        NOT_FOUND,
        re.compile(r"not found|no such file|does not exist|did not match any|unknown revision", re.I),
    ),
    (CONFIGURATION_ERROR, re.compile(r"\bconfig(uration)?\b.*(invalid|error|missing)", re.I)),
    (INVALID_INPUT, re.compile(r"invalid (argument|option|value)|unknown option|usage:", re.I)),
]


@dataclass
class ToolError:
    """A classified, caller-facing failure."""

    category: str
    message: str
    suggestion: str
    exit_code: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "error": self.message,
            "category": self.category,
            "suggestion": self.suggestion,
        }
        if self.exit_code is not None:
            data["exitCode"] = self.exit_code
        return data


def classify_error(result: RunResult, command: str) -> ToolError:
    """
    Classify a failed run by exit code and stderr content.

    Args:
        result: The RunResult of the failed command
        command: Executable name, used in the message

    Returns:
        ToolError with category and suggestion
    """
    stderr = result.stderr.strip()
    message = stderr or f'Command "{command}" exited with code {result.exit_code}'

    if result.timed_out or result.exit_code == 124 or "timed out" in stderr.lower():
        category = TIMEOUT
    elif result.exit_code == 127:
        category = COMMAND_NOT_FOUND
    elif result.exit_code == 126:
        category = PERMISSION_DENIED
    else:
        category = COMMAND_FAILED
        for name, pattern in _STDERR_PATTERNS:
            if pattern.search(stderr):
                category = name
                break

    return ToolError(
        category=category,
        message=message,
        suggestion=SUGGESTIONS[category],
        exit_code=result.exit_code,
    )


def error_from_exception(exc: ClirunError) -> ToolError:
    """Map a pre-spawn exception to a ToolError."""
    if isinstance(exc, CommandNotFoundError):
        category = COMMAND_NOT_FOUND
    elif isinstance(exc, (SpawnPermissionError, PolicyDeniedError)):
        category = PERMISSION_DENIED
    elif isinstance(exc, InputRejectedError):
        category = INVALID_INPUT
    else:
        category = COMMAND_FAILED
    return ToolError(category=category, message=str(exc), suggestion=SUGGESTIONS[category])
