"""Patch engine: apply generated diffs to an in-memory FileSet.

Provides ``apply_diffs()`` for applying a list of :class:`FileDiff`
objects to a :class:`~shipwright_kit.fileset.FileSet`, and
``apply_diffs_with_report()`` which also returns conflict notes.

A diff targets one file and carries hunks (start line, removed-line
count, new lines, optionally the old lines it expects to replace),
unified-diff text, or both.  Hunks are applied in ascending line order
with offset tracking and fuzzy matching of the expected lines.  A hunk
that does not match is skipped and recorded rather than aborting the
batch; if the diff also carries full file content, that replaces the
file instead.

All operations work on strings; nothing here touches the filesystem,
and input FileSets are never mutated.
"""

from __future__ import annotations

import logging
import re

from pydantic import BaseModel, ConfigDict, Field

from shipwright_kit.errors import ParseError, PatchConflict
from shipwright_kit.fileset import FileSet, normalise_path

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_FUZZ: int = 3  # max ± line offset for fuzzy matching

_HUNK_HEADER_RE = re.compile(
    r"^@@\s+-(\d+)(?:,(\d+))?\s+\+(\d+)(?:,(\d+))?\s+@@",
)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class DiffHunk(BaseModel):
    """One localised edit: replace ``remove_count`` lines at ``start_line``."""

    model_config = ConfigDict(frozen=True)

    start_line: int = Field(..., ge=0, description="1-based start line in the old file (0 = top)")
    remove_count: int = Field(default=0, ge=0, description="Number of old lines replaced")
    new_lines: list[str] = Field(default_factory=list, description="Replacement lines")
    expected_lines: list[str] = Field(
        default_factory=list,
        description="Old-side lines the hunk expects at start_line (empty = trust position)",
    )

    @property
    def old_span(self) -> int:
        return len(self.expected_lines) if self.expected_lines else self.remove_count


class FileDiff(BaseModel):
    """Proposed edits to one file."""

    model_config = ConfigDict(frozen=True)

    filename: str
    hunks: list[DiffHunk] = Field(default_factory=list)
    unified_diff: str = Field(default="", description="Unified-diff text alternative")
    full_content: str | None = Field(
        default=None, description="Whole-file replacement used when hunks conflict",
    )

    @property
    def is_pure_addition(self) -> bool:
        """True when the diff creates a file rather than editing one."""
        if self.full_content is not None:
            return True
        hunks = self.resolved_hunks()
        return bool(hunks) and all(h.old_span == 0 for h in hunks)

    def resolved_hunks(self) -> list[DiffHunk]:
        """Explicit hunks, or hunks parsed from ``unified_diff``."""
        if self.hunks:
            return list(self.hunks)
        return parse_unified_diff(self.unified_diff)


class ApplyReport(BaseModel):
    """Result of applying a batch of diffs."""

    model_config = ConfigDict(frozen=True)

    files: dict[str, str] = Field(default_factory=dict)
    changed: list[str] = Field(default_factory=list, description="Paths whose content changed")
    conflicts: list[str] = Field(default_factory=list, description="One note per skipped hunk")
    failed: list[str] = Field(default_factory=list, description="Diffs that could not apply at all")

    @property
    def clean(self) -> bool:
        return not self.conflicts and not self.failed


# ---------------------------------------------------------------------------
# Diff parser
# ---------------------------------------------------------------------------


def parse_unified_diff(diff_text: str) -> list[DiffHunk]:
    """Parse a unified diff string into a list of ``DiffHunk`` objects.

    Expects standard ``---``/``+++``/``@@ -old,count +new,count @@`` format.
    Returns an empty list for an empty diff.
    Raises ``ParseError`` on a malformed hunk header.
    """
    if not diff_text or not diff_text.strip():
        return []

    hunks: list[DiffHunk] = []
    lines = diff_text.split("\n")

    i = 0
    # Skip --- / +++ headers and any preamble (diff --git, index, ...)
    while i < len(lines) and not lines[i].startswith("@@"):
        i += 1

    while i < len(lines):
        line = lines[i]
        if not line.startswith("@@"):
            i += 1
            continue

        m = _HUNK_HEADER_RE.match(line)
        if not m:
            raise ParseError(diff_text, "unified_diff", reason=f"malformed hunk header {line!r}")

        old_start = int(m.group(1))
        old_count = int(m.group(2)) if m.group(2) is not None else 1
        if old_count == 0:
            # "-N,0" inserts after old line N.
            old_start += 1
        i += 1
        old_seq: list[str] = []
        new_seq: list[str] = []

        while i < len(lines):
            ln = lines[i]
            if ln.startswith("@@") or ln.startswith("--- ") or ln.startswith("+++ "):
                break
            if ln.startswith("-"):
                old_seq.append(ln[1:])
            elif ln.startswith("+"):
                new_seq.append(ln[1:])
            elif ln.startswith(" "):
                old_seq.append(ln[1:])
                new_seq.append(ln[1:])
            elif ln == "":
                # A trailing blank split artefact ends the hunk; an interior
                # blank line is context that lost its leading space.
                if i == len(lines) - 1:
                    break
                old_seq.append("")
                new_seq.append("")
            elif ln.startswith("\\"):
                pass  # "\ No newline at end of file"
            else:
                break
            i += 1

        hunks.append(DiffHunk(
            start_line=old_start,
            remove_count=len(old_seq),
            new_lines=new_seq,
            expected_lines=old_seq,
        ))

    return hunks


# ---------------------------------------------------------------------------
# Hunk matching
# ---------------------------------------------------------------------------


def _match_hunk(lines: list[str], hunk: DiffHunk, position: int, fuzz: int) -> int | None:
    """Find the 0-based index where *hunk* applies in *lines*.

    Hunks without expected lines trust *position* and only check bounds.
    Otherwise the exact position is tried first, then ±*fuzz* lines.
    Returns ``None`` when no match is found.
    """
    pattern = hunk.expected_lines
    if not pattern:
        if position + hunk.remove_count > len(lines):
            return None
        return min(position, len(lines))

    def _matches_at(pos: int) -> bool:
        if pos < 0 or pos + len(pattern) > len(lines):
            return False
        return lines[pos:pos + len(pattern)] == pattern

    if _matches_at(position):
        return position
    for offset in range(1, fuzz + 1):
        if _matches_at(position - offset):
            return position - offset
        if _matches_at(position + offset):
            return position + offset
    return None


# ---------------------------------------------------------------------------
# Patch application
# ---------------------------------------------------------------------------


def apply_hunks(
    content: str,
    hunks: list[DiffHunk],
    *,
    path: str = "",
    fuzz: int = DEFAULT_FUZZ,
) -> tuple[str, list[PatchConflict]]:
    """Apply *hunks* to *content* in ascending line order.

    Returns ``(new_content, conflicts)``; a conflicting hunk is skipped
    and does not shift the offset of later hunks.
    """
    lines = content.split("\n") if content else []
    offset = 0
    conflicts: list[PatchConflict] = []

    ordered = sorted(enumerate(hunks), key=lambda pair: pair[1].start_line)
    for idx, hunk in ordered:
        position = max(0, hunk.start_line - 1) + offset
        match_pos = _match_hunk(lines, hunk, position, fuzz)
        if match_pos is None:
            span = hunk.old_span
            conflicts.append(PatchConflict(
                file_path=path,
                hunk_index=idx,
                expected="\n".join(hunk.expected_lines),
                actual="\n".join(lines[position:position + span]),
            ))
            continue

        span = hunk.old_span
        lines[match_pos:match_pos + span] = list(hunk.new_lines)
        offset += len(hunk.new_lines) - span

    return "\n".join(lines), conflicts


def _apply_one(
    files: FileSet,
    diff: FileDiff,
    *,
    fuzz: int,
) -> tuple[str | None, list[str]]:
    """Return ``(new_content or None if failed, conflict notes)`` for one diff."""
    path = normalise_path(diff.filename)
    notes: list[str] = []

    try:
        hunks = diff.resolved_hunks()
    except ParseError as exc:
        if diff.full_content is not None:
            return diff.full_content, [f"{path}: {exc.message}; used full content"]
        return None, [f"{path}: {exc.message}"]

    if path not in files:
        if hunks and all(h.old_span == 0 for h in hunks):
            content, _ = apply_hunks("", hunks, path=path, fuzz=fuzz)
            return content, notes
        if diff.full_content is not None:
            return diff.full_content, notes
        return None, [f"{path}: target file not found"]

    if not hunks:
        if diff.full_content is not None:
            return diff.full_content, notes
        return files[path], notes

    content, conflicts = apply_hunks(files[path], hunks, path=path, fuzz=fuzz)
    if conflicts:
        notes.extend(f"{path}: hunk {c.hunk_index} did not match" for c in conflicts)
        if diff.full_content is not None:
            notes.append(f"{path}: replaced with full content")
            return diff.full_content, notes
    return content, notes


def apply_diffs_with_report(
    base_files: FileSet,
    diffs: list[FileDiff],
    *,
    fuzz: int = DEFAULT_FUZZ,
) -> ApplyReport:
    """Apply *diffs* to a copy of *base_files* and report what happened.

    A diff whose target is missing fails on its own (unless it only adds
    lines or carries full content); other diffs in the batch still apply.
    """
    files: FileSet = dict(base_files)
    changed: list[str] = []
    conflicts: list[str] = []
    failed: list[str] = []

    for diff in diffs:
        path = normalise_path(diff.filename)
        new_content, notes = _apply_one(files, diff, fuzz=fuzz)
        conflicts.extend(n for n in notes if "target file not found" not in n)
        if new_content is None:
            failed.append(path)
            logger.warning("Diff for %s could not be applied: %s", path, "; ".join(notes))
            continue
        if files.get(path) != new_content:
            files[path] = new_content
            if path not in changed:
                changed.append(path)

    if conflicts:
        logger.info("Applied diffs with %d conflict note(s)", len(conflicts))

    return ApplyReport(files=files, changed=changed, conflicts=conflicts, failed=failed)


def apply_diffs(
    base_files: FileSet,
    diffs: list[FileDiff],
    *,
    fuzz: int = DEFAULT_FUZZ,
) -> FileSet:
    """Apply *diffs* to *base_files* and return the new FileSet."""
    if not diffs:
        return dict(base_files)
    return apply_diffs_with_report(base_files, diffs, fuzz=fuzz).files


__all__ = [
    "ApplyReport",
    "DEFAULT_FUZZ",
    "DiffHunk",
    "FileDiff",
    "apply_diffs",
    "apply_diffs_with_report",
    "apply_hunks",
    "parse_unified_diff",
]
