"""
Server instructions sent during the MCP handshake.
"""

from __future__ import annotations

from clirun_mcp.registry import DISCOVER_TOOL_NAME, ServerProfile

BASE_PROMPT = """
clirun-mcp "{server_id}" server connected: {description}.

## Output

Every tool returns structured JSON plus a text summary. When the structured
result would be larger than the raw CLI output, a compact summary is returned
instead. Pass `compact: false` to always get the full result.

## Errors

- "must not start with" - an argument looked like a CLI flag and was rejected
- "not allowed" - the command is blocked by the deployment's allow-list
- exit code 124 - the command timed out and was killed
"""

LAZY_SECTION = """
## More tools

Only core tools are listed. Call `{discover}` to list and load the rest,
or `{discover}` with `load: ["name", ...]` to load specific tools.
"""


def build_instructions(profile: ServerProfile, lazy: bool) -> str:
    """Instructions text for a server, mentioning discovery when tools are deferred."""
    text = BASE_PROMPT.format(server_id=profile.server_id, description=profile.description)
    if profile.instructions:
        text += "\n" + profile.instructions.strip() + "\n"
    if lazy:
        text += LAZY_SECTION.format(discover=DISCOVER_TOOL_NAME)
    return text.strip()
