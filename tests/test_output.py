"""Tests for dual output and compaction."""

from __future__ import annotations

from dataclasses import dataclass

import pytest

from clirun_mcp.errors import ToolError
from clirun_mcp.output import (
    ToolResponse,
    canonical_json,
    compact_dual_output,
    dual_output,
    error_output,
    estimate_tokens,
    is_projection_subset,
    to_projection,
)


@dataclass
class Build:
    success: bool
    target: str
    warnings: list[dict]
    log: str


def full_text(b: Build) -> str:
    return f"build {b.target}: {'ok' if b.success else 'failed'}, {len(b.warnings)} warnings\n{b.log}"


def to_compact(b: Build) -> dict:
    return {"success": b.success, "target": b.target}


def compact_text(c: dict) -> str:
    return f"build {c['target']}: {'ok' if c['success'] else 'failed'}"


def make_build(n_warnings: int = 20) -> Build:
    warnings = [{"file": f"src/mod{i}.c", "line": i, "message": "unused variable"} for i in range(n_warnings)]
    return Build(success=True, target="all", warnings=warnings, log="done")


def test_estimate_tokens():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_force_full_always_returns_full():
    build = make_build()
    response = compact_dual_output(build, "x", full_text, to_compact, compact_text, force_full=True)

    assert response.compacted is False
    assert response.structured == to_projection(build)
    assert response.text == full_text(build)


def test_compacts_when_full_exceeds_raw():
    build = make_build()
    response = compact_dual_output(build, "short raw output", full_text, to_compact, compact_text)

    assert response.compacted is True
    assert response.structured == {"success": True, "target": "all"}
    assert response.text == "build all: ok"


def test_keeps_full_when_raw_is_larger():
    build = make_build(1)
    raw = "x" * 10_000
    response = compact_dual_output(build, raw, full_text, to_compact, compact_text)

    assert response.compacted is False
    assert response.structured["warnings"] == build.warnings


def test_ratio_is_tunable():
    build = make_build(5)
    raw = "y" * (len(canonical_json(to_projection(build))) // 2)

    assert compact_dual_output(build, raw, full_text, to_compact, compact_text).compacted
    assert not compact_dual_output(build, raw, full_text, to_compact, compact_text, ratio=3.0).compacted


@pytest.mark.parametrize("n_warnings", [0, 1, 5, 50])
@pytest.mark.parametrize("raw", ["", "a", "z" * 400])
def test_compact_projection_is_subset_of_full(n_warnings, raw):
    build = make_build(n_warnings)
    full = compact_dual_output(build, raw, full_text, to_compact, compact_text, force_full=True)
    chosen = compact_dual_output(build, raw, full_text, to_compact, compact_text)

    assert is_projection_subset(chosen.structured, full.structured)


def test_decision_is_deterministic():
    build = make_build()
    first = compact_dual_output(build, "raw", full_text, to_compact, compact_text)
    second = compact_dual_output(build, "raw", full_text, to_compact, compact_text)
    assert first == second


def test_non_subset_compact_falls_back_to_full():
    build = make_build()

    def leaky(b: Build) -> dict:
        return {"success": b.success, "invented": "not in full"}

    response = compact_dual_output(build, "raw", full_text, leaky, compact_text)
    assert response.compacted is False
    assert response.structured == to_projection(build)


def test_failing_compaction_never_raises():
    build = make_build()

    def broken(b: Build) -> dict:
        raise RuntimeError("projection bug")

    response = compact_dual_output(build, "raw", full_text, broken, compact_text)
    assert response.compacted is False
    assert response.text == full_text(build)


def test_failing_full_renderer_falls_back_to_json():
    def broken(_):
        raise KeyError("missing")

    response = dual_output({"success": False, "stage": "link"}, broken)
    assert '"stage": "link"' in response.text
    assert response.structured == {"success": False, "stage": "link"}


def test_dual_output_never_compacts():
    response = dual_output({"success": True}, lambda d: "ok")
    assert response == ToolResponse(text="ok", structured={"success": True})


def test_to_projection_prefers_to_dict():
    class Result:
        def to_dict(self):
            return {"exitCode": 0}

    assert to_projection(Result()) == {"exitCode": 0}
    assert to_projection({"a": 1}) == {"a": 1}
    assert to_projection(make_build(0))["target"] == "all"


def test_is_projection_subset():
    full = {"a": 1, "items": [{"x": 1, "y": 2}, {"x": 3, "y": 4}], "nested": {"k": "v", "j": 0}}

    assert is_projection_subset({}, full)
    assert is_projection_subset({"a": 1, "items": [{"x": 3}]}, full)
    assert is_projection_subset({"nested": {"k": "v"}}, full)
    assert not is_projection_subset({"a": 2}, full)
    assert not is_projection_subset({"b": 1}, full)
    assert not is_projection_subset({"items": [{"x": 5}]}, full)
    assert not is_projection_subset({"nested": "v"}, full)


def test_call_result_envelope():
    response = compact_dual_output(make_build(), "raw", full_text, to_compact, compact_text)
    result = response.to_call_result()

    assert result.isError is False
    assert result.structuredContent == {"success": True, "target": "all"}
    assert result.content[0].text == "build all: ok"


def test_error_output():
    error = ToolError(category="not-found", message="no such ref", suggestion="Check the ref.", exit_code=1)
    response = error_output(error)

    assert response.is_error
    assert response.structured["category"] == "not-found"
    assert response.structured["exitCode"] == 1
    assert "Suggestion: Check the ref." in response.text
    assert response.to_call_result().isError is True
