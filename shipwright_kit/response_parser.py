"""Generation response parser: turn model output into file changes.

The generation service is asked to answer with a JSON array of file
entries::

    [{"filename": "src/app/page.tsx", "unified_diff": "@@ -3,1 +3,1 @@\\n-a\\n+b"},
     {"filename": "src/lib/util.ts", "content": "export const x = 1;\\n"}]

Each entry carries one of ``content`` (whole file), ``unified_diff`` /
``unifiedDiff`` or ``hunks`` / ``diffHunks``.  A ``{"files": [...]}``
wrapper is accepted too, as are plain-text ``=== FILE: path ===``
blocks when the model ignores the JSON instruction.

All functions are pure string processors with no I/O.
"""

from __future__ import annotations

import json
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from shipwright_kit.errors import ParseError
from shipwright_kit.fileset import normalise_path
from shipwright_kit.patcher import DiffHunk, FileDiff

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Match outermost fenced code block: ``` optionally followed by a lang tag
_FENCE_OPEN_RE = re.compile(r"^```[a-zA-Z0-9_+-]*\s*$")
_FENCE_CLOSE_RE = re.compile(r"^```\s*$")

_FILE_BLOCK_RE = re.compile(r"^===\s*FILE:\s*(.+?)\s*===\s*$", re.MULTILINE)


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


class FileChange(BaseModel):
    """One file entry from a generation response."""

    model_config = ConfigDict(frozen=True)

    filename: str
    content: str | None = Field(default=None, description="Whole-file content")
    unified_diff: str = Field(default="", description="Unified-diff text")
    hunks: list[DiffHunk] = Field(default_factory=list)

    @property
    def is_diff(self) -> bool:
        return bool(self.unified_diff or self.hunks)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def strip_fences(text: str) -> str:
    """Remove the outermost markdown code fences from *text*.

    Only the first opening fence and its matching closing fence are
    removed.  Returns *text* unchanged if no fences are found.
    """
    if not text:
        return text

    lines = text.split("\n")

    open_idx: int | None = None
    for i, line in enumerate(lines):
        if _FENCE_OPEN_RE.match(line.strip()):
            open_idx = i
            break
    if open_idx is None:
        return text

    close_idx: int | None = None
    for i in range(len(lines) - 1, open_idx, -1):
        if _FENCE_CLOSE_RE.match(lines[i].strip()):
            close_idx = i
            break
    if close_idx is None:
        return text

    return "\n".join(lines[:open_idx] + lines[open_idx + 1:close_idx] + lines[close_idx + 1:])


def ensure_trailing_newline(text: str) -> str:
    """Append a trailing newline if *text* doesn't already end with one."""
    if not text or text.endswith("\n"):
        return text
    return text + "\n"


def _first(entry: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in entry and entry[key] is not None:
            return entry[key]
    return default


def _to_hunk(raw: dict) -> DiffHunk:
    new_lines = _first(raw, "new_lines", "newLines", default=[])
    if isinstance(new_lines, str):
        new_lines = new_lines.split("\n")
    expected = _first(raw, "expected_lines", "expectedLines", "old_lines", "oldLines", default=[])
    if isinstance(expected, str):
        expected = expected.split("\n")
    remove_count = _first(raw, "remove_count", "removeCount", default=None)
    if remove_count is None:
        remove_count = len(expected)
    return DiffHunk(
        start_line=int(_first(raw, "start_line", "startLine", "line", default=1)),
        remove_count=int(remove_count),
        new_lines=list(new_lines),
        expected_lines=list(expected),
    )


def _to_change(entry: Any) -> FileChange | None:
    if not isinstance(entry, dict):
        return None
    filename = _first(entry, "filename", "path", "file")
    if not filename or not isinstance(filename, str):
        return None

    raw_hunks = _first(entry, "hunks", "diffHunks", default=[]) or []
    hunks = [_to_hunk(h) for h in raw_hunks if isinstance(h, dict)]
    unified = _first(entry, "unified_diff", "unifiedDiff", "diff", default="") or ""
    content = _first(entry, "content")
    if content is not None and not isinstance(content, str):
        content = None
    if content is None and not unified and not hunks:
        return None

    return FileChange(
        filename=normalise_path(filename),
        content=content,
        unified_diff=unified,
        hunks=hunks,
    )


def _load_json_entries(text: str) -> list[Any] | None:
    """Return the list of entries in *text*, or ``None`` if no JSON is found."""
    candidates = [text.strip()]
    start, end = text.find("["), text.rfind("]")
    if 0 <= start < end:
        candidates.append(text[start:end + 1])
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(data, dict):
            data = data.get("files", [data])
        if isinstance(data, list):
            return data
    return None


def _parse_file_blocks(text: str) -> list[FileChange]:
    matches = list(_FILE_BLOCK_RE.finditer(text))
    changes: list[FileChange] = []
    for idx, m in enumerate(matches):
        body_end = matches[idx + 1].start() if idx + 1 < len(matches) else len(text)
        body = strip_fences(text[m.end():body_end].strip("\n"))
        changes.append(FileChange(
            filename=normalise_path(m.group(1)),
            content=ensure_trailing_newline(body),
        ))
    return changes


# ---------------------------------------------------------------------------
# Public functions
# ---------------------------------------------------------------------------


def parse_file_changes(raw: str) -> list[FileChange]:
    """Parse a raw generation response into ``FileChange`` entries.

    Raises ``ParseError`` when the response contains no usable entry.
    """
    if not raw or not raw.strip():
        raise ParseError(raw or "", "file_changes", reason="empty response")

    stripped = strip_fences(raw)
    entries = _load_json_entries(stripped)
    if entries is not None:
        try:
            changes = [c for c in (_to_change(e) for e in entries) if c is not None]
        except (TypeError, ValueError) as exc:
            raise ParseError(raw, "file_changes", reason=f"bad entry: {exc}") from exc
        if changes:
            return changes

    changes = _parse_file_blocks(raw)
    if changes:
        return changes

    raise ParseError(raw, "file_changes", reason="no file entries found")


def changes_to_diffs(changes: list[FileChange]) -> list[FileDiff]:
    """Convert parsed changes into ``FileDiff`` objects for the patcher.

    Whole-file content rides along as ``full_content`` so the patcher can
    fall back to it when a hunk conflicts.
    """
    return [
        FileDiff(
            filename=c.filename,
            hunks=c.hunks,
            unified_diff=c.unified_diff,
            full_content=c.content,
        )
        for c in changes
    ]


__all__ = [
    "FileChange",
    "changes_to_diffs",
    "ensure_trailing_newline",
    "parse_file_changes",
    "strip_fences",
]
