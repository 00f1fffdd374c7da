"""
Input guard for values that become positional CLI arguments.

A value like "--output=/etc/passwd" passed as a branch name would be parsed
by the wrapped program as a flag. Every tool parameter that lands in argv as
a positional passes through assert_no_flag_injection first.
"""

from __future__ import annotations

from clirun_mcp.errors import InputRejectedError

# Upper bounds used in tool input schemas
INPUT_LIMITS = {
    "string": 65_536,
    "short_string": 255,
    "path": 4_096,
    "array": 1_000,
    "message": 72_000,
}


def assert_no_flag_injection(value: str, field_name: str) -> None:
    """
    Reject a value that could be read as a command-line flag.

    Leading whitespace is ignored, so " --force" is rejected too.
    The empty string is accepted.

    Raises:
        InputRejectedError: If the value starts with "-"
    """
    if value.lstrip().startswith("-"):
        raise InputRejectedError(
            f'Invalid {field_name}: "{value}". Values must not start with "-" '
            "to prevent argument injection.",
            field_name=field_name,
        )


def assert_max_length(value: str, field_name: str, limit: int) -> None:
    """Reject strings longer than limit."""
    if len(value) > limit:
        raise InputRejectedError(
            f"Invalid {field_name}: length {len(value)} exceeds maximum of {limit}.",
            field_name=field_name,
        )
