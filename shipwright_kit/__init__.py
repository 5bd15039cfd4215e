"""Shipwright kit: pure building blocks for the self-healing pipeline.

Public API
----------
FileSet::

    FileSet, normalise_path, merge, without_prefix, without_null_bytes

Errors::

    KitError, ParseError, PatchConflict, SandboxViolation

Error signatures::

    error_signature, same_error

Log parser::

    parse_errors, ParsedError, ParsedErrors, ParseRule, PARSE_RULES,
    format_errors_for_prompt, select_files_to_fix

Patcher::

    DiffHunk, FileDiff, ApplyReport, apply_diffs, apply_diffs_with_report,
    parse_unified_diff

Response parser::

    FileChange, parse_file_changes, changes_to_diffs, strip_fences

Runtime::

    RetryDelay, ScratchWorkspace, read_tree, RunResult, run
"""

from shipwright_kit.backoff import RetryDelay
from shipwright_kit.errors import KitError, ParseError, PatchConflict, SandboxViolation
from shipwright_kit.fileset import (
    FileSet,
    merge,
    normalise_path,
    without_null_bytes,
    without_prefix,
)
from shipwright_kit.log_parser import (
    PARSE_RULES,
    ParsedError,
    ParsedErrors,
    ParseRule,
    format_errors_for_prompt,
    parse_errors,
    select_files_to_fix,
)
from shipwright_kit.patcher import (
    ApplyReport,
    DiffHunk,
    FileDiff,
    apply_diffs,
    apply_diffs_with_report,
    parse_unified_diff,
)
from shipwright_kit.response_parser import (
    FileChange,
    changes_to_diffs,
    parse_file_changes,
    strip_fences,
)
from shipwright_kit.runner import RunResult, run
from shipwright_kit.signature import error_signature, same_error
from shipwright_kit.workspace import ScratchWorkspace, read_tree

__all__ = [
    "ApplyReport",
    "DiffHunk",
    "FileChange",
    "FileDiff",
    "FileSet",
    "KitError",
    "PARSE_RULES",
    "ParseError",
    "ParseRule",
    "ParsedError",
    "ParsedErrors",
    "PatchConflict",
    "RetryDelay",
    "RunResult",
    "SandboxViolation",
    "ScratchWorkspace",
    "apply_diffs",
    "apply_diffs_with_report",
    "changes_to_diffs",
    "error_signature",
    "format_errors_for_prompt",
    "merge",
    "normalise_path",
    "parse_errors",
    "parse_file_changes",
    "parse_unified_diff",
    "read_tree",
    "run",
    "same_error",
    "select_files_to_fix",
    "strip_fences",
    "without_null_bytes",
    "without_prefix",
]
