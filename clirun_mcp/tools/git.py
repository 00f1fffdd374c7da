"""
git server: structured wrappers over common git subcommands.

Core: status, log, checkout. Deferred until discovery: stash_list, clean.
Refs, branch names and pathspecs go through the flag-injection guard;
clean is gated by the allow-list policy.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from clirun_mcp.errors import classify_error
from clirun_mcp.guard import INPUT_LIMITS, assert_max_length, assert_no_flag_injection
from clirun_mcp.output import ToolResponse, compact_dual_output, dual_output, error_output
from clirun_mcp.registry import (
    HandlerRegistry,
    ServerProfile,
    ToolContext,
    ToolDefinition,
    object_schema,
    string_array_param,
    string_param,
)
from clirun_mcp.runner import RunResult

SERVER_ID = "git"

handlers = HandlerRegistry()

STATUS_MAP = {
    "M": "modified",
    "A": "added",
    "D": "deleted",
    "R": "renamed",
    "C": "copied",
    "T": "type-changed",
}

_LOG_SEP = "\x1f"
_LOG_FORMAT = _LOG_SEP.join(["%H", "%h", "%an", "%ae", "%aI", "%D", "%s"])
_STASH_BRANCH_RE = re.compile(r"^(?:WIP on|On) ([^:]+):")
_C_ESCAPES = {
    "a": "\a",
    "b": "\b",
    "t": "\t",
    "n": "\n",
    "v": "\v",
    "f": "\f",
    "r": "\r",
    '"': '"',
    "\\": "\\",
}


async def _git(ctx: ToolContext, args: list[str], path: str | None) -> RunResult:
    cwd = ctx.policy.assert_allowed_root(path or ".", ctx.server_id)
    return await ctx.runner.run("git", args, cwd=cwd)


def _path_param() -> dict[str, Any]:
    return string_param("Repository path (default: cwd)", limit="path")


# -- status ----------------------------------------------------------------


@dataclass
class GitStatus:
    branch: str
    upstream: str | None = None
    ahead: int = 0
    behind: int = 0
    staged: list[dict[str, str]] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    untracked: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not (self.staged or self.modified or self.deleted or self.untracked or self.conflicts)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "branch": self.branch,
            "clean": self.clean,
            "staged": self.staged,
            "modified": self.modified,
            "deleted": self.deleted,
            "untracked": self.untracked,
            "conflicts": self.conflicts,
        }
        if self.upstream:
            data["upstream"] = self.upstream
            data["ahead"] = self.ahead
            data["behind"] = self.behind
        return data


def parse_branch_line(line: str) -> tuple[str, str | None, int, int]:
    """Parse '## main...origin/main [ahead 1, behind 2]'."""
    text = line.strip().removeprefix("## ").removeprefix("No commits yet on ")
    track = ""
    if text.endswith("]") and " [" in text:
        text, _, track = text.rpartition(" [")
        track = track.rstrip("]")

    ahead = behind = 0
    for part in track.split(","):
        kind, _, count = part.strip().partition(" ")
        if kind == "ahead" and count.isdigit():
            ahead = int(count)
        elif kind == "behind" and count.isdigit():
            behind = int(count)

    name, _, upstream = text.partition("...")
    return name or "unknown", upstream or None, ahead, behind


def unquote_path(path: str) -> str:
    """Undo git's C-style quoting of paths with spaces, quotes or non-ASCII bytes."""
    if len(path) < 2 or not (path.startswith('"') and path.endswith('"')):
        return path
    body = path[1:-1]
    out = bytearray()
    i = 0
    while i < len(body):
        ch = body[i]
        if ch != "\\" or i + 1 == len(body):
            out += ch.encode("utf-8")
            i += 1
            continue
        nxt = body[i + 1]
        octal = body[i + 1:i + 4]
        if len(octal) == 3 and all(c in "01234567" for c in octal):
            out.append(int(octal, 8) & 0xFF)
            i += 4
        else:
            out += _C_ESCAPES.get(nxt, nxt).encode("utf-8")
            i += 2
    return out.decode("utf-8", errors="replace")


def _status_entries(stdout: str) -> list[tuple[str, str, str | None]]:
    """(XY, path, original path) per entry, plus ("##", branch line, None).

    Handles both NUL-terminated (-z) and newline porcelain v1 output.
    """
    entries: list[tuple[str, str, str | None]] = []
    if "\0" in stdout:
        fields = stdout.split("\0")
        i = 0
        while i < len(fields):
            item = fields[i]
            i += 1
            if item.startswith("## "):
                entries.append(("##", item, None))
            elif len(item) >= 4:
                code, path, old = item[:2], item[3:], None
                # -z puts the original path of a rename or copy in the next field
                if code[0] in "RC" and i < len(fields):
                    old = fields[i]
                    i += 1
                entries.append((code, path, old))
        return entries

    for line in stdout.split("\n"):
        if line.startswith("## "):
            entries.append(("##", line, None))
        elif len(line) >= 4:
            code, rest = line[:2], line[3:].rstrip("\r")
            old, sep, new = rest.partition(" -> ")
            if sep and code[0] in "RC":
                entries.append((code, unquote_path(new), unquote_path(old)))
            else:
                entries.append((code, unquote_path(rest), None))
    return entries


def parse_status(stdout: str) -> GitStatus:
    """Parse `git status --porcelain=v1 --branch [-z]` output."""
    entries = _status_entries(stdout)
    branch_line = next((path for code, path, _ in entries if code == "##"), "## unknown")
    name, upstream, ahead, behind = parse_branch_line(branch_line)
    status = GitStatus(branch=name, upstream=upstream, ahead=ahead, behind=behind)

    for code, file, old in entries:
        if code == "##":
            continue
        index, worktree = code[0], code[1]

        if index == "U" or worktree == "U" or (index == "A" and worktree == "A") or (index == "D" and worktree == "D"):
            status.conflicts.append(file)
            continue

        if index not in (" ", "?", "!"):
            entry = {"file": file, "status": STATUS_MAP.get(index, "modified")}
            if old is not None:
                entry["oldFile"] = old
            status.staged.append(entry)

        if worktree == "M":
            status.modified.append(file)
        elif worktree == "D":
            status.deleted.append(file)
        elif index == "?":
            status.untracked.append(file)

    return status


def format_status(data: GitStatus) -> str:
    header = f"On branch {data.branch}"
    if data.upstream:
        header += f" (tracking {data.upstream}, ahead {data.ahead}, behind {data.behind})"
    if data.clean:
        return f"{header}\nnothing to commit, working tree clean"
    lines = [header]
    for entry in data.staged:
        lines.append(f"  staged {entry['status']}: {entry['file']}")
    lines.extend(f"  modified: {f}" for f in data.modified)
    lines.extend(f"  deleted: {f}" for f in data.deleted)
    lines.extend(f"  untracked: {f}" for f in data.untracked)
    lines.extend(f"  conflict: {f}" for f in data.conflicts)
    return "\n".join(lines)


STATUS_SCHEMA = object_schema(
    {
        "path": _path_param(),
        "pathspec": string_array_param("Limit status to these paths"),
    },
    compact=False,
)


@handlers.register("git.status", STATUS_SCHEMA)
async def status_tool(ctx: ToolContext, args: dict[str, Any]) -> ToolResponse:
    git_args = ["status", "--porcelain=v1", "--branch", "-z"]
    pathspec = args.get("pathspec") or []
    for p in pathspec:
        assert_no_flag_injection(p, "pathspec")
    if pathspec:
        git_args += ["--", *pathspec]

    result = await _git(ctx, git_args, args.get("path"))
    if result.exit_code != 0:
        return error_output(classify_error(result, "git"))
    return dual_output(parse_status(result.stdout), format_status)


# -- log -------------------------------------------------------------------


@dataclass
class GitLog:
    commits: list[dict[str, str]]

    def to_dict(self) -> dict[str, Any]:
        return {"commits": self.commits, "total": len(self.commits)}


@dataclass
class GitLogCompact:
    commits: list[dict[str, str]]
    total: int

    def to_dict(self) -> dict[str, Any]:
        return {"commits": self.commits, "total": self.total}


def parse_log(stdout: str) -> GitLog:
    commits = []
    for line in stdout.strip().split("\n"):
        if not line:
            continue
        parts = line.split(_LOG_SEP)
        if len(parts) < 7:
            continue
        full_hash, short_hash, author, email, date, refs = parts[:6]
        commit = {
            "hash": full_hash,
            "hashShort": short_hash,
            "author": author,
            "email": email,
            "date": date,
            "message": _LOG_SEP.join(parts[6:]),
        }
        if refs:
            commit["refs"] = refs
        commits.append(commit)
    return GitLog(commits=commits)


def compact_log(data: GitLog) -> GitLogCompact:
    return GitLogCompact(
        commits=[{"hashShort": c["hashShort"], "message": c["message"]} for c in data.commits],
        total=len(data.commits),
    )


def format_log(data: GitLog) -> str:
    if not data.commits:
        return "No commits."
    lines = []
    for c in data.commits:
        refs = f" ({c['refs']})" if c.get("refs") else ""
        lines.append(f"{c['hashShort']} {c['message']}{refs}\n    {c['author']} <{c['email']}> {c['date']}")
    return "\n".join(lines)


def format_log_compact(data: GitLogCompact) -> str:
    if not data.commits:
        return "No commits."
    return "\n".join(f"{c['hashShort']} {c['message']}" for c in data.commits)


LOG_SCHEMA = object_schema(
    {
        "path": _path_param(),
        "ref": string_param("Revision or branch to start from (default: HEAD)"),
        "max_count": {
            "type": "integer",
            "minimum": 1,
            "maximum": 1000,
            "default": 10,
            "description": "Number of commits to return",
        },
        "author": string_param("Only commits by this author"),
    }
)


@handlers.register("git.log", LOG_SCHEMA)
async def log_tool(ctx: ToolContext, args: dict[str, Any]) -> ToolResponse:
    git_args = ["log", f"--format={_LOG_FORMAT}", f"--max-count={int(args.get('max_count', 10))}"]
    author = args.get("author")
    if author:
        assert_no_flag_injection(author, "author")
        git_args.append(f"--author={author}")
    ref = args.get("ref")
    if ref:
        assert_no_flag_injection(ref, "ref")
        git_args.append(ref)

    result = await _git(ctx, git_args, args.get("path"))
    if result.exit_code != 0:
        return error_output(classify_error(result, "git"))
    return compact_dual_output(
        parse_log(result.stdout),
        result.stdout,
        format_log,
        compact_log,
        format_log_compact,
        force_full=args.get("compact") is False,
        ratio=ctx.compact_ratio,
    )


# -- checkout --------------------------------------------------------------


@dataclass
class GitCheckout:
    ref: str
    previous_ref: str
    created: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "ref": self.ref,
            "previousRef": self.previous_ref,
            "created": self.created,
        }


def format_checkout(data: GitCheckout) -> str:
    verb = "Created and switched to" if data.created else "Switched to"
    return f"{verb} '{data.ref}' (was '{data.previous_ref}')"


CHECKOUT_SCHEMA = object_schema(
    {
        "path": _path_param(),
        "ref": string_param("Branch, tag or commit to check out"),
        "create": {"type": "boolean", "default": False, "description": "Create the branch (-b)"},
    },
    required=["ref"],
    compact=False,
)


@handlers.register("git.checkout", CHECKOUT_SCHEMA)
async def checkout_tool(ctx: ToolContext, args: dict[str, Any]) -> ToolResponse:
    ref = args["ref"]
    assert_no_flag_injection(ref, "ref")
    assert_max_length(ref, "ref", INPUT_LIMITS["short_string"])
    path = args.get("path")

    head = await _git(ctx, ["rev-parse", "--abbrev-ref", "HEAD"], path)
    previous = head.stdout.strip() if head.exit_code == 0 else "unknown"

    create = bool(args.get("create"))
    git_args = ["checkout", "-b", ref] if create else ["checkout", ref]
    result = await _git(ctx, git_args, path)
    if result.exit_code != 0:
        return error_output(classify_error(result, "git"))
    return dual_output(GitCheckout(ref=ref, previous_ref=previous, created=create), format_checkout)


# -- stash_list ------------------------------------------------------------


@dataclass
class GitStashList:
    stashes: list[dict[str, Any]]

    def to_dict(self) -> dict[str, Any]:
        return {"stashes": self.stashes, "total": len(self.stashes)}


def parse_stash_list(stdout: str) -> GitStashList:
    """Parse `git stash list --format=%gd<TAB>%gs<TAB>%cd`."""
    stashes = []
    for line in stdout.strip().split("\n"):
        if not line:
            continue
        ref, _, rest = line.partition("\t")
        message, _, date = rest.partition("\t")
        index_match = re.search(r"\{(\d+)\}", ref)
        entry: dict[str, Any] = {
            "index": int(index_match.group(1)) if index_match else len(stashes),
            "message": message,
            "date": date,
        }
        branch_match = _STASH_BRANCH_RE.match(message)
        if branch_match:
            entry["branch"] = branch_match.group(1)
        stashes.append(entry)
    return GitStashList(stashes=stashes)


def compact_stash_list(data: GitStashList) -> dict[str, Any]:
    return {
        "stashes": [{"index": s["index"], "message": s["message"]} for s in data.stashes],
        "total": len(data.stashes),
    }


def format_stash_list(data: GitStashList) -> str:
    if not data.stashes:
        return "No stashes."
    return "\n".join(f"stash@{{{s['index']}}}: {s['message']} ({s['date']})" for s in data.stashes)


def format_stash_list_compact(data: dict[str, Any]) -> str:
    if not data["stashes"]:
        return "No stashes."
    return "\n".join(f"stash@{{{s['index']}}}: {s['message']}" for s in data["stashes"])


STASH_LIST_SCHEMA = object_schema(
    {
        "path": _path_param(),
        "max_count": {"type": "integer", "minimum": 1, "description": "Limit number of entries"},
    }
)


@handlers.register("git.stash_list", STASH_LIST_SCHEMA)
async def stash_list_tool(ctx: ToolContext, args: dict[str, Any]) -> ToolResponse:
    git_args = ["stash", "list", "--format=%gd\t%gs\t%cd", "--date=iso"]
    if args.get("max_count"):
        git_args.append(f"--max-count={int(args['max_count'])}")

    result = await _git(ctx, git_args, args.get("path"))
    if result.exit_code != 0:
        return error_output(classify_error(result, "git"))
    return compact_dual_output(
        parse_stash_list(result.stdout),
        result.stdout,
        format_stash_list,
        compact_stash_list,
        format_stash_list_compact,
        force_full=args.get("compact") is False,
        ratio=ctx.compact_ratio,
    )


# -- clean -----------------------------------------------------------------


@dataclass
class GitClean:
    files: list[str]
    dry_run: bool

    def to_dict(self) -> dict[str, Any]:
        return {"files": self.files, "total": len(self.files), "dryRun": self.dry_run}


def parse_clean(stdout: str) -> list[str]:
    files = []
    for line in stdout.split("\n"):
        for prefix in ("Would remove ", "Removing "):
            if line.startswith(prefix):
                files.append(unquote_path(line[len(prefix):].strip()))
                break
    return files


def compact_clean(data: GitClean) -> dict[str, Any]:
    return {"total": len(data.files), "dryRun": data.dry_run}


def format_clean(data: GitClean) -> str:
    if not data.files:
        return "Nothing to clean."
    verb = "Would remove" if data.dry_run else "Removed"
    return "\n".join(f"{verb} {f}" for f in data.files)


def format_clean_compact(data: dict[str, Any]) -> str:
    verb = "Would remove" if data["dryRun"] else "Removed"
    return f"{verb} {data['total']} path(s)."


CLEAN_SCHEMA = object_schema(
    {
        "path": _path_param(),
        "dry_run": {
            "type": "boolean",
            "default": True,
            "description": "Only list what would be removed (-n). Set false to delete.",
        },
        "directories": {"type": "boolean", "default": False, "description": "Also remove directories (-d)"},
        "pathspec": string_array_param("Limit clean to these paths"),
    }
)


@handlers.register("git.clean", CLEAN_SCHEMA)
async def clean_tool(ctx: ToolContext, args: dict[str, Any]) -> ToolResponse:
    ctx.policy.assert_allowed_by_policy("clean", ctx.server_id)
    dry_run = args.get("dry_run", True) is not False
    git_args = ["clean", "-n" if dry_run else "-f"]
    if args.get("directories"):
        git_args.append("-d")
    pathspec = args.get("pathspec") or []
    for p in pathspec:
        assert_no_flag_injection(p, "pathspec")
    if pathspec:
        git_args += ["--", *pathspec]

    result = await _git(ctx, git_args, args.get("path"))
    if result.exit_code != 0:
        return error_output(classify_error(result, "git"))
    return compact_dual_output(
        GitClean(files=parse_clean(result.stdout), dry_run=dry_run),
        result.stdout,
        format_clean,
        compact_clean,
        format_clean_compact,
        force_full=args.get("compact") is False,
        ratio=ctx.compact_ratio,
    )


DEFINITIONS = [
    ToolDefinition(
        "status",
        "Returns the working tree status as structured data (branch, staged, modified, untracked, conflicts).",
        "git.status",
        is_core=True,
    ),
    ToolDefinition("log", "Returns commit history as structured data.", "git.log", is_core=True),
    ToolDefinition(
        "checkout", "Switches to a branch, tag or commit, optionally creating the branch.", "git.checkout", is_core=True
    ),
    ToolDefinition("stash_list", "Lists stash entries with index, message, date and branch.", "git.stash_list"),
    ToolDefinition(
        "clean",
        "Removes untracked files (dry run by default). Gated by the allow-list policy.",
        "git.clean",
    ),
]

PROFILE = ServerProfile(
    server_id=SERVER_ID,
    description="Structured git status, history, checkout, stash and clean",
    definitions=DEFINITIONS,
    handlers=handlers,
)
