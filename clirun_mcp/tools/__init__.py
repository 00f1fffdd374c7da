"""Tool server profiles - process and git."""

from clirun_mcp.registry import ServerProfile
from clirun_mcp.tools import git, process

SERVERS: dict[str, ServerProfile] = {
    process.PROFILE.server_id: process.PROFILE,
    git.PROFILE.server_id: git.PROFILE,
}


def get_profile(server_id: str) -> ServerProfile:
    """Look up a server profile by id."""
    try:
        return SERVERS[server_id]
    except KeyError:
        raise ValueError(
            f"Unknown server: {server_id}. Available: {', '.join(sorted(SERVERS))}"
        ) from None
