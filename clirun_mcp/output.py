"""
Dual-output responses: structured projection plus human text.

compact_dual_output serves a compact projection when the full one would
cost noticeably more tokens than the raw CLI output it was parsed from.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from mcp.types import CallToolResult, TextContent

from clirun_mcp.errors import ToolError

logger = logging.getLogger("clirun-mcp.output")

# Full output is served while its estimated cost stays within this
# multiple of the raw output's cost
COMPACT_OVERHEAD_RATIO = 1.0


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters."""
    return math.ceil(len(text) / 4)


def canonical_json(data: Any) -> str:
    """Stable JSON text used for size estimates."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def to_projection(data: Any) -> dict[str, Any]:
    """JSON-ready dict for a structured result."""
    if hasattr(data, "to_dict"):
        return data.to_dict()
    if dataclasses.is_dataclass(data) and not isinstance(data, type):
        return dataclasses.asdict(data)
    if isinstance(data, dict):
        return dict(data)
    return {"value": data}


def is_projection_subset(compact: Any, full: Any) -> bool:
    """
    True when compact carries no data absent from full.

    Dicts: every compact key exists in full with a subset value.
    Lists: every compact element is a subset of some full element.
    Scalars: equal.
    """
    if isinstance(compact, dict):
        if not isinstance(full, dict):
            return False
        return all(k in full and is_projection_subset(v, full[k]) for k, v in compact.items())
    if isinstance(compact, (list, tuple)):
        if not isinstance(full, (list, tuple)):
            return False
        return all(any(is_projection_subset(item, f) for f in full) for item in compact)
    return compact == full


@dataclass
class ToolResponse:
    """The rendering chosen for one tool call."""

    text: str
    structured: dict[str, Any]
    compacted: bool = False
    is_error: bool = False

    def content(self) -> list[TextContent]:
        return [TextContent(type="text", text=self.text)]

    def to_call_result(self) -> CallToolResult:
        return CallToolResult(
            content=self.content(),
            structuredContent=self.structured,
            isError=self.is_error,
        )


def _fallback_text(projection: dict[str, Any]) -> str:
    return json.dumps(projection, indent=2, sort_keys=True, default=str)


def dual_output(data: Any, render_full: Callable[[Any], str]) -> ToolResponse:
    """Full rendering plus full projection, no compaction."""
    try:
        projection = to_projection(data)
    except Exception as e:
        logger.warning(f"Projection failed, serving repr: {e}")
        projection = {"value": repr(data)}
    try:
        text = render_full(data)
    except Exception as e:
        logger.warning(f"Full rendering failed, serving JSON: {e}")
        text = _fallback_text(projection)
    return ToolResponse(text=text, structured=projection)


def compact_dual_output(
    data: Any,
    raw_output: str,
    render_full: Callable[[Any], str],
    to_compact: Callable[[Any], Any],
    render_compact: Callable[[Any], str],
    force_full: bool = False,
    ratio: float | None = None,
) -> ToolResponse:
    """
    Choose between the full and compact rendering of data.

    Args:
        data: Structured result of the tool
        raw_output: What the CLI printed (stdout + stderr)
        render_full: Full human text
        to_compact: Projects data to its compact form
        render_compact: Human text for the compact form
        force_full: Skip compaction (tool parameter compact=false)
        ratio: Overrides COMPACT_OVERHEAD_RATIO

    Returns:
        ToolResponse. Never raises; any failure on the compact path
        falls back to the full rendering.
    """
    full = dual_output(data, render_full)
    if force_full:
        return full

    limit = ratio if ratio is not None else COMPACT_OVERHEAD_RATIO
    full_tokens = estimate_tokens(canonical_json(full.structured))
    raw_tokens = estimate_tokens(raw_output or "")
    if full_tokens <= raw_tokens * limit:
        return full

    try:
        compact = to_compact(data)
        projection = to_projection(compact)
        if not is_projection_subset(projection, full.structured):
            logger.warning("Compact projection adds data not in full projection, serving full")
            return full
        text = render_compact(compact)
    except Exception as e:
        logger.warning(f"Compaction failed, serving full output: {e}")
        return full

    logger.debug(f"Compacted output: {full_tokens} -> {estimate_tokens(canonical_json(projection))} tokens")
    return ToolResponse(text=text, structured=projection, compacted=True)


def error_output(error: ToolError) -> ToolResponse:
    """Error response carrying category and suggestion."""
    lines = [f"Error [{error.category}]: {error.message}", f"Suggestion: {error.suggestion}"]
    return ToolResponse(text="\n".join(lines), structured=error.to_dict(), is_error=True)
