"""Tests for ToolServer: registration, dispatch, discovery and the MCP handlers."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from mcp.server.lowlevel.server import request_ctx
from mcp.types import CallToolRequest, CallToolRequestParams, ListToolsRequest

from clirun_mcp.config import ClirunConfig
from clirun_mcp.errors import ClirunError, InputRejectedError, PolicyDeniedError
from clirun_mcp.policy import MappingPolicySource
from clirun_mcp.registry import DISCOVER_TOOL_NAME
from clirun_mcp.server import ToolServer, build_policy_source
from clirun_mcp.tools import get_profile


def make_server(
    server_id: str,
    lazy: bool = False,
    policy: dict | None = None,
    env: dict | None = None,
    observability: bool = False,
) -> ToolServer:
    config = ClirunConfig()
    config.lazy.enabled = lazy
    config.observability.enabled = observability
    return ToolServer(
        config,
        get_profile(server_id),
        policy_source=MappingPolicySource(policy or {}),
        env_source=MappingPolicySource(env or {}),
    )


def test_process_server_registers_run():
    server = make_server("process")
    assert server.tool_names() == ["run"]
    assert server.lazy is None


def test_git_server_without_lazy_registers_everything():
    server = make_server("git")
    assert server.tool_names() == ["status", "log", "checkout", "stash_list", "clean"]


def test_git_server_lazy_registers_core_and_discover():
    server = make_server("git", lazy=True)
    assert server.tool_names() == ["status", "log", "checkout", DISCOVER_TOOL_NAME]
    assert server.lazy.has_deferred_tools()
    assert "discover_tools" in server.server.instructions


@pytest.mark.asyncio
async def test_discover_registers_once():
    server = make_server("git", lazy=True)

    first = await server.call(DISCOVER_TOOL_NAME, {})
    second = await server.call(DISCOVER_TOOL_NAME, {})

    assert [t["name"] for t in first.structuredContent["loaded"]] == ["stash_list", "clean"]
    assert second.structuredContent["loaded"] == []
    assert "All tools are loaded" in second.content[0].text
    names = server.tool_names()
    assert names.count("stash_list") == 1
    assert names.count("clean") == 1
    assert "stash_list" in server.tool_handlers


@pytest.mark.asyncio
async def test_discover_selected_tool():
    server = make_server("git", lazy=True)
    result = await server.call(DISCOVER_TOOL_NAME, {"load": ["clean"]})

    assert [t["name"] for t in result.structuredContent["loaded"]] == ["clean"]
    assert result.structuredContent["available"][0]["name"] == "stash_list"
    assert "clean" in server.tool_names()
    assert "stash_list" not in server.tool_names()


def test_tool_filter_disables_lazy_mode():
    server = make_server("git", lazy=True, env={"CLIRUN_GIT_TOOLS": "status,stash_list"})
    assert server.lazy is None
    assert server.tool_names() == ["status", "stash_list"]


def test_metrics_tool_only_with_observability():
    assert "get_metrics" not in make_server("process").tool_names()
    assert "get_metrics" in make_server("process", observability=True).tool_names()


@pytest.mark.asyncio
async def test_run_tool_compacts_by_default(python_cmd):
    server = make_server("process")
    result = await server.call("run", {"command": python_cmd, "args": ["-c", "print('hi')"]})

    assert result.isError is False
    data = result.structuredContent
    assert data["exitCode"] == 0
    assert data["success"] is True
    assert "stdout" not in data
    assert result.content[0].text.endswith("ms).")


@pytest.mark.asyncio
async def test_run_tool_compact_false_returns_full(python_cmd):
    server = make_server("process")
    result = await server.call(
        "run", {"command": python_cmd, "args": ["-c", "print('hi')"], "compact": False}
    )

    data = result.structuredContent
    assert data["stdout"] == "hi\n"
    assert data["stderr"] == ""
    assert data["timedOut"] is False


@pytest.mark.asyncio
async def test_run_tool_timeout(python_cmd):
    server = make_server("process")
    result = await server.call(
        "run",
        {"command": python_cmd, "args": ["-c", "import time; time.sleep(10)"], "timeout": 100},
    )

    assert result.structuredContent["exitCode"] == 124
    assert result.structuredContent["timedOut"] is True
    assert "TIMED OUT" in result.content[0].text


@pytest.mark.asyncio
async def test_run_tool_policy_denied_before_spawn(tmp_path):
    server = make_server(
        "process",
        policy={"CLIRUN_PROCESS_ALLOWED_COMMANDS": "ls"},
        observability=True,
    )
    marker = tmp_path / "created"

    with pytest.raises(PolicyDeniedError, match="not allowed"):
        await server.call("run", {"command": "touch", "args": [str(marker)]})

    assert not marker.exists()
    stats = server.obs.get_stats()
    assert stats["total_errors"] == 1
    assert stats["tools"]["run"]["errors"] == 1


@pytest.mark.asyncio
async def test_run_tool_cwd_outside_allowed_roots(tmp_path):
    allowed = tmp_path / "allowed"
    allowed.mkdir()
    server = make_server("process", policy={"CLIRUN_ALLOWED_ROOTS": str(allowed)})

    with pytest.raises(PolicyDeniedError, match="outside the allowed roots"):
        await server.call("run", {"command": "ls", "cwd": str(tmp_path)})


@pytest.mark.asyncio
async def test_unknown_tool_raises():
    server = make_server("process")
    with pytest.raises(ClirunError, match="Unknown tool"):
        await server.call("nope", {})


@pytest.mark.asyncio
async def test_injection_rejected_through_server():
    server = make_server("git")
    with pytest.raises(InputRejectedError, match="must not start with"):
        await server.call("checkout", {"ref": "--orphan=evil"})


@pytest.mark.asyncio
async def test_metrics_recorded_for_successful_call(python_cmd):
    server = make_server("process", observability=True)
    await server.call("run", {"command": python_cmd, "args": ["-c", "pass"]})

    result = await server.call("get_metrics", {})
    stats = result.structuredContent
    assert stats["total_requests"] == 1
    assert stats["tools"]["run"]["calls"] == 1
    assert stats["tools"]["run"]["compacted"] == 1


@pytest.mark.asyncio
async def test_mcp_list_tools_handler():
    server = make_server("git", lazy=True)
    handler = server.server.request_handlers[ListToolsRequest]

    result = await handler(ListToolsRequest(method="tools/list"))

    names = [t.name for t in result.root.tools]
    assert names == ["status", "log", "checkout", DISCOVER_TOOL_NAME]


@pytest.mark.asyncio
async def test_mcp_call_tool_handler_returns_error_result_on_rejection():
    server = make_server("process", policy={"CLIRUN_ALLOWED_COMMANDS": "ls"})
    handler = server.server.request_handlers[CallToolRequest]

    result = await handler(
        CallToolRequest(
            method="tools/call",
            params=CallToolRequestParams(name="run", arguments={"command": "rm", "args": ["-rf", "x"]}),
        )
    )

    assert result.root.isError is True
    assert "not allowed" in result.root.content[0].text


@pytest.mark.asyncio
async def test_mcp_call_tool_handler_success(python_cmd):
    server = make_server("process")
    handler = server.server.request_handlers[CallToolRequest]

    result = await handler(
        CallToolRequest(
            method="tools/call",
            params=CallToolRequestParams(
                name="run",
                arguments={"command": python_cmd, "args": ["-c", "print('hello')"], "compact": False},
            ),
        )
    )

    assert result.root.isError is False
    assert result.root.structuredContent["stdout"] == "hello\n"


def test_build_policy_source_prefers_environment(monkeypatch):
    config = ClirunConfig()
    config.policy.allowed_commands = ["ls"]
    source = build_policy_source(config)

    assert source.get("CLIRUN_ALLOWED_COMMANDS") == "ls"
    monkeypatch.setenv("CLIRUN_ALLOWED_COMMANDS", "echo")
    assert source.get("CLIRUN_ALLOWED_COMMANDS") == "echo"


@pytest.mark.asyncio
async def test_overlong_ref_rejected_before_git_runs():
    server = make_server("git")
    with pytest.raises(InputRejectedError, match="exceeds maximum"):
        await server.call("checkout", {"ref": "b" * 300})


@pytest.mark.asyncio
async def test_discover_notifies_list_changed_once():
    server = make_server("git", lazy=True)
    session = SimpleNamespace(send_tool_list_changed=AsyncMock())
    token = request_ctx.set(SimpleNamespace(session=session))
    try:
        await server.call(DISCOVER_TOOL_NAME, {})
        session.send_tool_list_changed.assert_awaited_once()

        await server.call(DISCOVER_TOOL_NAME, {})
        session.send_tool_list_changed.assert_awaited_once()
    finally:
        request_ctx.reset(token)


@pytest.mark.asyncio
async def test_discover_without_request_skips_notification():
    server = make_server("git", lazy=True)
    result = await server.call(DISCOVER_TOOL_NAME, {"load": ["clean"]})
    assert [t["name"] for t in result.structuredContent["loaded"]] == ["clean"]


def test_named_profile_keeps_lazy_mode():
    server = make_server("git", lazy=True, env={"CLIRUN_PROFILE": "web"})

    assert server.lazy is not None
    assert server.tool_names() == ["status", "log", "checkout", DISCOVER_TOOL_NAME]
    assert [t["name"] for t in server.lazy.list_lazy()] == ["stash_list"]


def test_full_profile_disables_lazy_mode():
    server = make_server("git", lazy=True, env={"CLIRUN_PROFILE": "full"})

    assert server.lazy is None
    assert server.tool_names() == ["status", "log", "checkout", "stash_list", "clean"]


@pytest.mark.asyncio
async def test_rejection_logged_with_error_category(caplog):
    server = make_server("process", policy={"CLIRUN_ALLOWED_COMMANDS": "ls"})

    with caplog.at_level("WARNING", logger="clirun-mcp"):
        with pytest.raises(PolicyDeniedError):
            await server.call("run", {"command": "rm"})

    rejected = [r for r in caplog.records if "rejected" in r.getMessage()]
    assert len(rejected) == 1
    assert rejected[0].category == "permission-denied"
    assert rejected[0].tool == "run"
