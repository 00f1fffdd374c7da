"""
Tool tables, handler dispatch, and lazy registration.

A tool server is a static table of ToolDefinition records plus a
HandlerRegistry that maps each record's handler_id to the async function
implementing it. At startup core tools are installed on the server; when
lazy mode is on, the rest wait in a LazyToolRegistry until the caller runs
the discover_tools meta-tool.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, Protocol, TYPE_CHECKING

from clirun_mcp.guard import INPUT_LIMITS
from clirun_mcp.output import COMPACT_OVERHEAD_RATIO
from clirun_mcp.policy import ENV_PREFIX, PolicySource

if TYPE_CHECKING:
    from clirun_mcp.output import ToolResponse
    from clirun_mcp.policy import PolicyGate
    from clirun_mcp.runner import ProcessRunner

logger = logging.getLogger("clirun-mcp.registry")

DISCOVER_TOOL_NAME = "discover_tools"


@dataclass(frozen=True)
class ToolDefinition:
    """Static description of one tool."""

    name: str
    description: str
    handler_id: str
    is_core: bool = False


@dataclass
class ToolContext:
    """Per-server services handed to every tool handler."""

    server_id: str
    runner: ProcessRunner
    policy: PolicyGate
    compact_ratio: float = COMPACT_OVERHEAD_RATIO


ToolFunc = Callable[[ToolContext, dict[str, Any]], Awaitable["ToolResponse"]]


@dataclass
class ToolHandler:
    handler_id: str
    input_schema: dict[str, Any]
    func: ToolFunc


class HandlerRegistry:
    """Dispatch map from handler_id to implementation."""

    def __init__(self):
        self._handlers: dict[str, ToolHandler] = {}

    def register(self, handler_id: str, input_schema: dict[str, Any]) -> Callable[[ToolFunc], ToolFunc]:
        """Decorator registering an async tool function under handler_id."""

        def decorator(func: ToolFunc) -> ToolFunc:
            if handler_id in self._handlers:
                raise ValueError(f"Duplicate handler id: {handler_id}")
            self._handlers[handler_id] = ToolHandler(handler_id, input_schema, func)
            return func

        return decorator

    def get(self, handler_id: str) -> ToolHandler:
        try:
            return self._handlers[handler_id]
        except KeyError:
            raise KeyError(f"No handler registered for id: {handler_id}") from None

    def __contains__(self, handler_id: object) -> bool:
        return handler_id in self._handlers

    def ids(self) -> list[str]:
        return list(self._handlers)


@dataclass
class ServerProfile:
    """Everything needed to build one tool server."""

    server_id: str
    description: str
    definitions: list[ToolDefinition]
    handlers: HandlerRegistry
    instructions: str = ""

    def validate(self) -> None:
        seen: set[str] = set()
        for definition in self.definitions:
            if definition.name in seen:
                raise ValueError(f"Duplicate tool name in {self.server_id}: {definition.name}")
            if definition.handler_id not in self.handlers:
                raise ValueError(
                    f"Tool {definition.name} references unknown handler {definition.handler_id}"
                )
            seen.add(definition.name)


class ToolTarget(Protocol):
    """Anything tools can be installed on (the live server)."""

    def register_tool(self, definition: ToolDefinition, handler: ToolHandler) -> None: ...


def object_schema(
    properties: dict[str, Any],
    required: list[str] | None = None,
    compact: bool = True,
) -> dict[str, Any]:
    """JSON schema for a tool's input, with the standard compact switch."""
    props = dict(properties)
    if compact:
        props["compact"] = {
            "type": "boolean",
            "default": True,
            "description": "Auto-compact output when structured output exceeds raw CLI size. "
            "Set false to always get the full schema.",
        }
    schema: dict[str, Any] = {"type": "object", "properties": props}
    if required:
        schema["required"] = required
    return schema


def string_param(description: str, limit: str = "short_string") -> dict[str, Any]:
    return {"type": "string", "description": description, "maxLength": INPUT_LIMITS[limit]}


def string_array_param(description: str) -> dict[str, Any]:
    return {
        "type": "array",
        "items": {"type": "string", "maxLength": INPUT_LIMITS["string"]},
        "maxItems": INPUT_LIMITS["array"],
        "description": description,
    }


class LazyToolRegistry:
    """
    Holds non-core tools until they are discovered.

    Each definition is pending or registered. Registration is one-way, so
    discover() can be called any number of times and only ever installs a
    tool once.
    """

    def __init__(self, target: ToolTarget, handlers: HandlerRegistry):
        self.target = target
        self.handlers = handlers
        self._pending: dict[str, ToolDefinition] = {}
        self._registered: set[str] = set()

    def register_lazy(self, definition: ToolDefinition) -> None:
        """Defer a tool until discovery."""
        if definition.name in self._registered:
            return
        self._pending[definition.name] = definition

    def mark_registered(self, name: str) -> None:
        """Record a tool installed outside the registry (core tools)."""
        self._pending.pop(name, None)
        self._registered.add(name)

    def has_deferred_tools(self) -> bool:
        return bool(self._pending)

    def list_lazy(self) -> list[dict[str, str]]:
        """Name and description of every pending tool."""
        return [{"name": d.name, "description": d.description} for d in self._pending.values()]

    def load_tool(self, name: str) -> bool:
        """Install one pending tool. Returns False if unknown or already loaded."""
        definition = self._pending.pop(name, None)
        if definition is None:
            return False
        self.target.register_tool(definition, self.handlers.get(definition.handler_id))
        self._registered.add(name)
        logger.info(f"Lazy tool registered: {name}")
        return True

    def load_all(self) -> list[ToolDefinition]:
        """Install every pending tool, in table order."""
        loaded = []
        for definition in list(self._pending.values()):
            if self.load_tool(definition.name):
                loaded.append(definition)
        return loaded

    def discover(self, load: Iterable[str] | None = None) -> dict[str, Any]:
        """
        Register deferred tools and report what was newly registered.

        Args:
            load: Names to load. None loads every pending tool.
                Unknown or already-loaded names are skipped.

        Returns:
            {"loaded": [...], "available": [...], "total_available": int}
            where each entry is {"name", "description"}.
        """
        if load is None:
            loaded = self.load_all()
        else:
            wanted = list(dict.fromkeys(load))
            pending = [self._pending[n] for n in wanted if n in self._pending]
            loaded = [d for d in pending if self.load_tool(d.name)]

        available = self.list_lazy()
        return {
            "loaded": [{"name": d.name, "description": d.description} for d in loaded],
            "available": available,
            "total_available": len(available),
        }


def render_discovery(result: dict[str, Any]) -> str:
    """Human text for a discover() result."""
    lines = []
    loaded = result["loaded"]
    if loaded:
        lines.append(f"Loaded {len(loaded)} tool(s): {', '.join(t['name'] for t in loaded)}")
    available = result["available"]
    if available:
        lines.append(f"{len(available)} additional tool(s) available:")
        lines.extend(f"  - {t['name']}: {t['description']}" for t in available)
    elif not loaded:
        lines.append("All tools are loaded. No additional tools available.")
    return "\n".join(lines)


# Preset "server:tool" sets selected with CLIRUN_PROFILE. None means every tool.
PROFILES: dict[str, tuple[str, ...] | None] = {
    "minimal": ("git:status", "git:log", "git:checkout", "process:run"),
    "web": ("git:status", "git:log", "git:checkout", "git:stash_list", "process:run"),
    "python": ("git:status", "git:log", "git:checkout", "git:stash_list", "process:run"),
    "devops": ("git:status", "git:log", "git:checkout", "process:run"),
    "rust": ("git:status", "git:log", "git:checkout", "git:stash_list", "process:run"),
    "go": ("git:status", "git:log", "git:checkout", "git:stash_list", "process:run"),
    "full": None,
}


def profile_name(source: PolicySource) -> str | None:
    """Lower-cased CLIRUN_PROFILE, or None when unset or blank."""
    raw = source.get(f"{ENV_PREFIX}_PROFILE")
    if raw is None or not raw.strip():
        return None
    return raw.strip().lower()


def resolve_profile(source: PolicySource) -> set[str] | None:
    """
    "server:tool" entries allowed by CLIRUN_PROFILE, or None for no restriction.

    "full" and unknown profile names do not filter; an unknown name is logged.
    """
    name = profile_name(source)
    if name is None:
        return None
    if name not in PROFILES:
        logger.warning(f'Unknown profile "{name}". Valid profiles: {", ".join(PROFILES)}. Ignoring.')
        return None
    tools = PROFILES[name]
    return set(tools) if tools is not None else None


def _split_pairs(entries: Iterable[str], server_id: str) -> set[str]:
    allowed = set()
    for item in entries:
        server, _, tool = item.strip().partition(":")
        if tool and server == server_id:
            allowed.add(tool)
    return allowed


def resolve_tool_filter(server_id: str, source: PolicySource) -> set[str] | None:
    """
    Tool names this server may expose, or None for no restriction.

    Precedence: CLIRUN_<SERVER>_TOOLS (bare names), then CLIRUN_TOOLS
    ("server:tool" pairs for all servers), then the CLIRUN_PROFILE preset.
    """
    scope = server_id.upper().replace("-", "_")
    scoped = source.get(f"{ENV_PREFIX}_{scope}_TOOLS")
    if scoped is not None and scoped.strip():
        return {name.strip() for name in scoped.split(",") if name.strip()}

    universal = source.get(f"{ENV_PREFIX}_TOOLS")
    if universal is not None and universal.strip():
        return _split_pairs(universal.split(","), server_id)

    profile = resolve_profile(source)
    if profile is None:
        return None
    return _split_pairs(profile, server_id)


def lazy_allowed(server_id: str, source: PolicySource) -> bool:
    """
    Whether lazy registration may apply. An explicit tool list or the
    "full" profile turns it off; a named preset profile keeps it.
    """
    scope = server_id.upper().replace("-", "_")
    for key in (f"{ENV_PREFIX}_{scope}_TOOLS", f"{ENV_PREFIX}_TOOLS"):
        value = source.get(key)
        if value is not None and value.strip():
            return False
    return profile_name(source) != "full"


def install_tools(
    target: ToolTarget,
    definitions: Iterable[ToolDefinition],
    handlers: HandlerRegistry,
    lazy: LazyToolRegistry | None = None,
    tool_filter: set[str] | None = None,
) -> list[str]:
    """
    Apply the startup rule to a tool table.

    Filtered-out tools are skipped entirely. Core tools, and every tool when
    lazy is None, are installed now. The rest are deferred to lazy.

    Returns:
        Names installed immediately.
    """
    installed = []
    for definition in definitions:
        if tool_filter is not None and definition.name not in tool_filter:
            logger.debug(f"Tool filtered out: {definition.name}")
            continue
        if definition.is_core or lazy is None:
            target.register_tool(definition, handlers.get(definition.handler_id))
            if lazy is not None:
                lazy.mark_registered(definition.name)
            installed.append(definition.name)
        else:
            lazy.register_lazy(definition)
    return installed

