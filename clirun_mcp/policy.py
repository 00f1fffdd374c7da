"""
Allow-list policy gate for commands and working directories.

Policy keys (comma-separated values):
- CLIRUN_ALLOWED_COMMANDS / CLIRUN_<SERVER>_ALLOWED_COMMANDS
- CLIRUN_ALLOWED_ROOTS / CLIRUN_<SERVER>_ALLOWED_ROOTS

A server-scoped key overrides the global one. When neither is set
(or both are blank) everything is allowed. Sources are read on every
check so a changed environment takes effect without a restart.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol

from clirun_mcp.errors import PolicyDeniedError

logger = logging.getLogger("clirun-mcp.policy")

ENV_PREFIX = "CLIRUN"
_EXECUTABLE_SUFFIXES = (".exe", ".cmd", ".bat", ".sh")


class PolicySource(Protocol):
    """Anything that can look up a raw policy value by key."""

    def get(self, key: str) -> str | None: ...


class EnvPolicySource:
    """Reads policy keys from the live process environment."""

    def get(self, key: str) -> str | None:
        return os.environ.get(key)


class MappingPolicySource:
    """Policy keys from a plain mapping (TOML [mcp.policy], tests)."""

    def __init__(self, values: Mapping[str, str | list[str]] | None = None):
        self.values = dict(values or {})

    def get(self, key: str) -> str | None:
        value = self.values.get(key)
        if isinstance(value, list):
            return ",".join(value)
        return value


class ChainedPolicySource:
    """First source that has a non-blank value for a key wins."""

    def __init__(self, *sources: PolicySource):
        self.sources = sources

    def get(self, key: str) -> str | None:
        for source in self.sources:
            value = source.get(key)
            if value is not None and value.strip():
                return value
        return None


def policy_key(kind: str, server_id: str | None = None) -> str:
    """Build the env-style key, e.g. policy_key("ALLOWED_COMMANDS", "git")."""
    if server_id:
        scope = server_id.upper().replace("-", "_")
        return f"{ENV_PREFIX}_{scope}_{kind}"
    return f"{ENV_PREFIX}_{kind}"


def parse_list(raw: str | None) -> list[str] | None:
    """Split a comma-separated policy value. Blank or missing means unset."""
    if raw is None:
        return None
    items = [item.strip() for item in raw.split(",") if item.strip()]
    return items or None


def normalize_command(command: str) -> str:
    """Reduce a command to its basename without a platform executable suffix."""
    name = Path(command.strip().replace("\\", "/")).name
    lowered = name.lower()
    for suffix in _EXECUTABLE_SUFFIXES:
        if lowered.endswith(suffix):
            return name[: -len(suffix)]
    return name


class PolicyGate:
    """Checks commands and paths against the configured allow-lists."""

    def __init__(self, source: PolicySource | None = None):
        self.source = source or EnvPolicySource()

    def _resolve(self, kind: str, server_id: str | None) -> tuple[list[str] | None, str]:
        if server_id:
            key = policy_key(kind, server_id)
            scoped = parse_list(self.source.get(key))
            if scoped is not None:
                return scoped, key
        key = policy_key(kind)
        return parse_list(self.source.get(key)), key

    def allowed_commands(self, server_id: str | None = None) -> list[str] | None:
        """Effective command allow-list, or None when unrestricted."""
        allowed, _ = self._resolve("ALLOWED_COMMANDS", server_id)
        return allowed

    def assert_allowed_by_policy(self, command: str, server_id: str | None = None) -> None:
        """
        Raise PolicyDeniedError unless command is on the effective allow-list.

        Args:
            command: Executable name or path
            server_id: Identity of the tool server making the call
        """
        allowed, key = self._resolve("ALLOWED_COMMANDS", server_id)
        if allowed is None:
            return

        base = normalize_command(command)
        if command in allowed or base in allowed:
            return

        logger.warning(f"Policy denied command {command!r} for server {server_id!r} ({key})")
        raise PolicyDeniedError(
            f'Command "{command}" is not allowed by ALLOWED_COMMANDS policy. '
            f"Allowed: {', '.join(allowed)}",
            command=command,
            server_id=server_id,
        )

    def assert_allowed_root(self, path: str | Path, server_id: str | None = None) -> Path:
        """
        Raise PolicyDeniedError unless path resolves inside an allowed root.

        Returns:
            The resolved path
        """
        resolved = Path(path).expanduser().resolve()
        roots, key = self._resolve("ALLOWED_ROOTS", server_id)
        if roots is None:
            return resolved

        for root in roots:
            root_path = Path(root).expanduser().resolve()
            if resolved == root_path or root_path in resolved.parents:
                return resolved

        logger.warning(f"Policy denied path {str(resolved)!r} for server {server_id!r} ({key})")
        raise PolicyDeniedError(
            f'Path "{resolved}" is outside the allowed roots. Allowed: {", ".join(roots)}',
            server_id=server_id,
        )


def assert_allowed_by_policy(
    command: str,
    server_id: str | None = None,
    source: PolicySource | None = None,
) -> None:
    """Module-level shortcut that checks against the environment by default."""
    PolicyGate(source).assert_allowed_by_policy(command, server_id)


def assert_allowed_root(
    path: str | Path,
    server_id: str | None = None,
    source: PolicySource | None = None,
) -> Path:
    """Module-level shortcut for PolicyGate.assert_allowed_root."""
    return PolicyGate(source).assert_allowed_root(path, server_id)
