"""Tests for the clirun-mcp typer CLI."""

from __future__ import annotations

import json
import sys

from typer.testing import CliRunner

from clirun_mcp.cli import app

runner = CliRunner()


def test_tools_lists_registered_tools():
    result = runner.invoke(app, ["tools", "git"])

    assert result.exit_code == 0
    assert "status" in result.output
    assert "clean" in result.output


def test_tools_shows_deferred_in_lazy_mode(monkeypatch):
    monkeypatch.setenv("CLIRUN_LAZY", "true")
    result = runner.invoke(app, ["tools", "git"])

    assert result.exit_code == 0
    assert "deferred" in result.output
    assert "discover_tools" in result.output


def test_tools_unknown_server():
    result = runner.invoke(app, ["tools", "svn"])
    assert result.exit_code == 1


def test_check_policy_allows_without_list():
    result = runner.invoke(app, ["check-policy", "rm"])

    assert result.exit_code == 0
    assert "no allow-list configured" in result.output


def test_check_policy_scoped_override(monkeypatch):
    monkeypatch.setenv("CLIRUN_ALLOWED_COMMANDS", "ls")
    monkeypatch.setenv("CLIRUN_GIT_ALLOWED_COMMANDS", "git")

    assert runner.invoke(app, ["check-policy", "git", "--server", "git"]).exit_code == 0
    denied = runner.invoke(app, ["check-policy", "ls", "--server", "git"])
    assert denied.exit_code == 1
    assert "not allowed" in denied.output


def test_exec_prints_result_and_propagates_exit_code():
    result = runner.invoke(app, ["exec", sys.executable, "--", "-c", "import sys; sys.exit(4)"])

    assert result.exit_code == 4
    assert json.loads(result.output)["exitCode"] == 4


def test_exec_missing_command():
    result = runner.invoke(app, ["exec", "definitely-not-a-real-binary-xyz"])
    assert result.exit_code == 127


def test_exec_rejects_zero_timeout():
    result = runner.invoke(app, ["exec", "--timeout", "0", sys.executable, "--", "-c", "pass"])

    assert result.exit_code == 2
    assert "greater than zero" in result.output
