#!/usr/bin/env python3
"""
clirun-mcp server - exposes one tool server profile over MCP stdio.

Run with: python -m clirun_mcp.server --server git

Core tools are registered at startup. With lazy mode on (CLIRUN_LAZY=true
or [mcp.lazy] enabled) the remaining tools are deferred behind the
discover_tools meta-tool, and the client is sent tools/list_changed
when they are loaded.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import functools
import json
import logging
import sys
import time
from typing import Any

from mcp.server import Server
from mcp.server.lowlevel import NotificationOptions
from mcp.server.stdio import stdio_server
from mcp.types import CallToolResult, Tool

from clirun_mcp import __version__
from clirun_mcp.config import ClirunConfig, load_config
from clirun_mcp.errors import ClirunError, error_from_exception
from clirun_mcp.observability import ObservabilityContext, setup_logging
from clirun_mcp.output import ToolResponse, estimate_tokens
from clirun_mcp.policy import (
    ChainedPolicySource,
    EnvPolicySource,
    MappingPolicySource,
    PolicyGate,
    PolicySource,
)
from clirun_mcp.prompts import build_instructions
from clirun_mcp.registry import (
    DISCOVER_TOOL_NAME,
    LazyToolRegistry,
    ServerProfile,
    ToolContext,
    ToolDefinition,
    ToolHandler,
    install_tools,
    lazy_allowed,
    render_discovery,
    resolve_tool_filter,
)
from clirun_mcp.runner import ProcessRunner

logger = logging.getLogger("clirun-mcp")

DISCOVER_TOOL = Tool(
    name=DISCOVER_TOOL_NAME,
    description="List tools not loaded yet and load them. "
    "Without arguments loads every remaining tool; pass `load` to pick specific ones.",
    inputSchema={
        "type": "object",
        "properties": {
            "load": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Tool names to load (default: all)",
            },
        },
    },
)

METRICS_TOOL = Tool(
    name="get_metrics",
    description="Server call counts, error rates, latencies and token estimates.",
    inputSchema={"type": "object", "properties": {}},
)

ToolCallable = Callable[[dict[str, Any]], Awaitable[ToolResponse]]


def build_policy_source(config: ClirunConfig) -> PolicySource:
    """Environment first, then the static [mcp.policy] tables."""
    return ChainedPolicySource(EnvPolicySource(), MappingPolicySource(config.policy.as_mapping()))


class ToolServer:
    """MCP server for one tool profile."""

    def __init__(
        self,
        config: ClirunConfig,
        profile: ServerProfile,
        policy_source: PolicySource | None = None,
        runner: ProcessRunner | None = None,
        env_source: PolicySource | None = None,
    ):
        profile.validate()
        self.config = config
        self.profile = profile
        self.server_id = profile.server_id

        self.obs = ObservabilityContext(config.observability, self.server_id)
        self.policy = PolicyGate(policy_source or build_policy_source(config))
        self.runner = runner or ProcessRunner(
            default_timeout=config.tools.exec_timeout,
            max_output_bytes=config.tools.max_output_bytes,
        )
        self.context = ToolContext(
            server_id=self.server_id,
            runner=self.runner,
            policy=self.policy,
            compact_ratio=config.output.compact_ratio,
        )

        self.tools: list[Tool] = []
        self.tool_handlers: dict[str, ToolCallable] = {}

        # An explicit tool list or CLIRUN_PROFILE=full turns lazy mode off
        env_source = env_source or EnvPolicySource()
        tool_filter = resolve_tool_filter(self.server_id, env_source)
        lazy_enabled = config.lazy.enabled and lazy_allowed(self.server_id, env_source)
        self.lazy = LazyToolRegistry(self, profile.handlers) if lazy_enabled else None

        installed = install_tools(self, profile.definitions, profile.handlers, self.lazy, tool_filter)
        deferred = self.lazy is not None and self.lazy.has_deferred_tools()
        if deferred:
            self._add_builtin(DISCOVER_TOOL, self._handle_discover)
        if config.observability.enabled:
            self._add_builtin(METRICS_TOOL, self._handle_get_metrics)

        self.server = Server(
            f"clirun-{self.server_id}",
            version=__version__,
            instructions=build_instructions(profile, deferred),
        )
        self._register_handlers()
        logger.info(
            f"clirun-mcp {self.server_id} initialized: {len(installed)} tools registered, "
            f"{len(self.lazy.list_lazy()) if self.lazy else 0} deferred"
        )

    def register_tool(self, definition: ToolDefinition, handler: ToolHandler) -> None:
        """Install a profile tool on the live server."""
        self.tools.append(
            Tool(
                name=definition.name,
                description=definition.description,
                inputSchema=handler.input_schema,
            )
        )
        self.tool_handlers[definition.name] = functools.partial(handler.func, self.context)

    def _add_builtin(self, tool: Tool, handler: ToolCallable) -> None:
        self.tools.append(tool)
        self.tool_handlers[tool.name] = handler

    def tool_names(self) -> list[str]:
        return [t.name for t in self.tools]

    def _register_handlers(self):
        """Register MCP protocol handlers."""

        @self.server.list_tools()
        async def list_tools() -> list[Tool]:
            logger.debug("list_tools called")
            return list(self.tools)

        @self.server.call_tool()
        async def call_tool(name: str, arguments: dict) -> CallToolResult:
            return await self.call(name, arguments)

    async def call(self, name: str, arguments: dict[str, Any] | None) -> CallToolResult:
        """
        Dispatch one tool call with metrics and logging.

        Pre-spawn rejections (bad input, policy, spawn failure) are logged,
        counted as errors and re-raised; the protocol layer turns them into
        an isError result.
        """
        arguments = arguments or {}
        cid = self.obs.correlation_id()
        start_time = time.time()
        extra = {"correlation_id": cid, "server": self.server_id, "tool": name}
        logger.info(f"call_tool: {name}", extra=extra)

        handler = self.tool_handlers.get(name)
        try:
            if handler is None:
                raise ClirunError(f"Unknown tool: {name}")
            response = await handler(arguments)
        except ClirunError as e:
            self._record(cid, name, arguments, start_time, success=False)
            error = error_from_exception(e)
            logger.warning(
                f"Tool {name} rejected ({error.category}): {e}",
                extra={**extra, "status": "error", "error": error.message, "category": error.category},
            )
            raise
        except Exception as e:
            self._record(cid, name, arguments, start_time, success=False)
            logger.exception(f"Tool {name} failed: {e}", extra=extra)
            raise

        latency_ms = self._record(
            cid, name, arguments, start_time,
            success=not response.is_error,
            tokens_out=estimate_tokens(response.text),
            compacted=response.compacted,
        )
        logger.info(
            f"call_tool done: {name}",
            extra={
                **extra,
                "latency_ms": latency_ms,
                "status": "error" if response.is_error else "ok",
                "compacted": response.compacted,
            },
        )
        return response.to_call_result()

    def _record(
        self,
        cid: str,
        name: str,
        arguments: dict[str, Any],
        start_time: float,
        success: bool,
        tokens_out: int = 0,
        compacted: bool = False,
    ) -> float:
        latency_ms = (time.time() - start_time) * 1000
        self.obs.record(
            correlation_id=cid,
            tool=name,
            latency_ms=latency_ms,
            success=success,
            tokens_in=estimate_tokens(json.dumps(arguments, default=str)),
            tokens_out=tokens_out,
            compacted=compacted,
        )
        return latency_ms

    async def _handle_discover(self, args: dict[str, Any]) -> ToolResponse:
        assert self.lazy is not None
        result = self.lazy.discover(args.get("load"))
        if result["loaded"]:
            await self._notify_tools_changed()
        return ToolResponse(text=render_discovery(result), structured=result)

    async def _handle_get_metrics(self, args: dict[str, Any]) -> ToolResponse:
        stats = self.obs.get_stats()
        return ToolResponse(text=json.dumps(stats, indent=2), structured=stats)

    async def _notify_tools_changed(self) -> None:
        """Send tools/list_changed on the session of the current request."""
        try:
            ctx = self.server.request_context
        except LookupError:
            logger.debug("No active request, tools/list_changed not sent")
            return
        await ctx.session.send_tool_list_changed()

    async def run(self):
        """Run the server with stdio transport."""
        logger.info(f"Starting clirun-mcp {self.server_id} server (stdio transport)")
        async with stdio_server() as (read_stream, write_stream):
            await self.server.run(
                read_stream,
                write_stream,
                self.server.create_initialization_options(
                    notification_options=NotificationOptions(tools_changed=True),
                ),
            )


def configure_logging(config: ClirunConfig) -> None:
    """Send logs to stderr; JSON when observability is enabled."""
    if config.observability.enabled:
        setup_logging(config.observability)
        return
    logging.basicConfig(
        level=getattr(logging, config.server.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main(argv: list[str] | None = None):
    """Entry point for a clirun-mcp tool server."""
    import argparse

    from clirun_mcp.tools import SERVERS, get_profile

    parser = argparse.ArgumentParser(description="clirun-mcp tool server")
    parser.add_argument(
        "--server",
        "-s",
        choices=sorted(SERVERS),
        default=None,
        help="Tool server profile to expose (default: [mcp.server] server_id)",
    )
    parser.add_argument("--config", "-c", help="Path to clirun.toml config file", default=None)
    parser.add_argument(
        "--log-level",
        "-l",
        choices=["debug", "info", "warning", "error"],
        default=None,
        help="Override log level",
    )
    args = parser.parse_args(argv)

    config = load_config(args.config)
    if args.server:
        config.server.server_id = args.server
    if args.log_level:
        config.server.log_level = args.log_level
        config.observability.log_level = args.log_level

    configure_logging(config)
    logger.info(
        f"Config loaded: server={config.server.server_id}, lazy={config.lazy.enabled}, "
        f"exec_timeout={config.tools.exec_timeout}s"
    )

    server = ToolServer(config, get_profile(config.server.server_id))
    asyncio.run(server.run())


if __name__ == "__main__":
    main()
