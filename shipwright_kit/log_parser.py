"""Deterministic build-log parser: structured, fixable errors from raw output.

Every rule is a pure function over the combined log text: no LLM, no
network, no side effects.  Input is raw stdout/stderr text from a local
build or from the hosting platform; output is a frozen Pydantic model.

Rules live in the ordered ``PARSE_RULES`` table.  Each entry pairs a
compiled pattern with a builder that turns one match into a
``ParsedError`` (or ``None`` to ignore the match), so a rule can be
tested on its own and new log shapes are added by appending a row.

Public helpers:

- ``parse_errors``            : logs → ``ParsedErrors``
- ``format_errors_for_prompt`` : ``ParsedErrors`` → text block for a fix prompt
- ``select_files_to_fix``     : ``ParsedErrors`` + FileSet → the files worth sending
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Literal

from pydantic import BaseModel, ConfigDict, Field

from shipwright_kit.fileset import FileSet, normalise_path

Category = Literal["typescript", "syntax", "jsx", "module", "eslint", "build"]

CATEGORIES: tuple[str, ...] = ("typescript", "syntax", "jsx", "module", "eslint", "build")

MAX_RAW_ERROR_CHARS: int = 2000
MAX_FALLBACK_CONTEXT_CHARS: int = 1000
MAX_FALLBACK_LINES: int = 5
MAX_LIKELY_FILES: int = 5

# Config files pulled into a fix when the linter itself complains.
LINT_CONFIG_FILES: tuple[str, ...] = (
    "eslint.config.mjs",
    ".eslintrc.json",
    ".eslintrc.js",
)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class ParsedError(BaseModel):
    """A single fixable error extracted from a build log."""

    model_config = ConfigDict(frozen=True)

    category: Category = Field(..., description="Error family")
    message: str = Field(..., description="Human-readable error text")
    file: str | None = Field(default=None, description="Normalised relative path")
    line: int | None = Field(default=None, ge=0)
    column: int | None = Field(default=None, ge=0)
    severity: Literal["error", "warning"] = "error"
    code: str = Field(default="", description="Rule code, e.g. TS_TYPE_ERROR")
    context: str = Field(default="", description="Extra log context, if any")

    @property
    def dedup_key(self) -> str:
        return f"{self.file or ''}:{self.line if self.line is not None else ''}:{self.message}"

    @property
    def location(self) -> str:
        if not self.file:
            return "Unknown location"
        loc = self.file
        if self.line:
            loc += f":{self.line}"
        if self.column:
            loc += f":{self.column}"
        return loc


class ParsedErrors(BaseModel):
    """Result of parsing one failed build or deployment log."""

    model_config = ConfigDict(frozen=True)

    errors: list[ParsedError] = Field(default_factory=list)
    summary: str = Field(default="No errors found")
    has_category: dict[str, bool] = Field(default_factory=dict)
    raw_error: str = Field(default="", description="Leading excerpt of the raw log")

    def has(self, category: str) -> bool:
        return self.has_category.get(category, False)

    @property
    def digest(self) -> str:
        """One line per error: the text fed to ``error_signature``."""
        if not self.errors:
            return self.raw_error
        return "\n".join(
            f"[{e.category}] {e.location}: {e.message} {e.context}".rstrip()
            for e in self.errors
        )

    def by_file(self) -> dict[str, list[ParsedError]]:
        """Group errors that carry a file path, preserving first-seen order."""
        grouped: dict[str, list[ParsedError]] = {}
        for err in self.errors:
            if err.file:
                grouped.setdefault(err.file, []).append(err)
        return grouped


# ---------------------------------------------------------------------------
# Rule table
# ---------------------------------------------------------------------------

RuleBuilder = Callable[[re.Match], "ParsedError | None"]


@dataclass(frozen=True)
class ParseRule:
    """One known log shape: a pattern plus a match → error builder."""

    name: str
    pattern: re.Pattern
    build: RuleBuilder


def _int(value: str | None) -> int | None:
    return int(value) if value else None


def _build_typescript(m: re.Match) -> ParsedError:
    file, line, column, message = m.groups()
    return ParsedError(
        category="typescript",
        file=normalise_path(file),
        line=int(line),
        column=int(column),
        message=f"TypeScript: {message.strip()}",
        code="TS_TYPE_ERROR",
    )


def _build_file_anchored(m: re.Match) -> ParsedError:
    file, line, column, message = m.groups()
    lowered = message.lower()
    category: Category = "syntax"
    if "jsx" in lowered:
        category = "jsx"
    elif "import" in message or "export" in message:
        category = "module"
    return ParsedError(
        category=category,
        file=normalise_path(file),
        line=int(line),
        column=int(column),
        message=message.strip(),
        code="SYNTAX_ERROR",
    )


# /vercel/path0/src/app/page.tsx -> src/app/page.tsx
_ABSOLUTE_PROJECT_RE = re.compile(r"^(?:[A-Za-z]:)?/(?:[^/]+/)*?(?=(?:src|app)/)")


def _project_path(file: str) -> str:
    """Project-relative path for a location reported by the build machine."""
    return normalise_path(_ABSOLUTE_PROJECT_RE.sub("", file.strip().replace("\\", "/")))


def _build_pointer(m: re.Match) -> ParsedError | None:
    message, file, line, column = m.groups()
    if not message or not message.strip():
        return None
    return ParsedError(
        category="syntax",
        file=_project_path(file) if file and file.strip() else None,
        line=_int(line),
        column=_int(column),
        message=f"SWC: {message.strip()}",
        code="SWC_ERROR",
    )


_RESOLVE_RE = re.compile(r"""(?:Can't resolve|Cannot find module)\s*['"]([^'"]+)['"]""")


def _build_module_not_found(m: re.Match) -> ParsedError:
    raw = m.group(1).strip()
    found = _RESOLVE_RE.search(raw)
    name = found.group(1) if found else raw
    return ParsedError(
        category="module",
        message=f"Module not found: {name}",
        code="MODULE_NOT_FOUND",
        context=raw,
    )


def _build_import_export(m: re.Match) -> ParsedError:
    return ParsedError(
        category="module",
        message=f"Import/Export Error: {m.group(1).strip()}",
        code="IMPORT_EXPORT_ERROR",
    )


def _build_lint_config(m: re.Match) -> ParsedError:
    return ParsedError(
        category="eslint",
        message=f"ESLint Config: {m.group(1).strip()}",
        code="ESLINT_CONFIG",
    )


def _build_lint_block(m: re.Match) -> ParsedError:
    file, line, column, severity, message = m.groups()
    return ParsedError(
        category="eslint",
        file=normalise_path(file),
        line=int(line),
        column=int(column),
        message=message.strip(),
        severity="error" if severity.lower() == "error" else "warning",
        code="ESLINT_ERROR",
    )


def _build_lint_inline(m: re.Match) -> ParsedError:
    line, column, severity, message, rule = m.groups()
    text = message.strip()
    return ParsedError(
        category="eslint",
        line=int(line),
        column=int(column),
        message=f"{text} ({rule})" if rule else text,
        severity="error" if severity.lower() == "error" else "warning",
        code=rule or "ESLINT_ERROR",
    )


def _build_command_failure(m: re.Match) -> ParsedError:
    command, exit_code = m.groups()
    return ParsedError(
        category="build",
        message=f"Build failed: {command} exited with code {exit_code}",
        code="BUILD_ERROR",
    )


def _build_failed_to_compile(m: re.Match) -> ParsedError:
    return ParsedError(
        category="build",
        message="Compilation failed",
        code="COMPILE_ERROR",
        context=m.group(1).strip(),
    )


_SRC_PREFIX_RE = re.compile(r"^.*/src/")


def _build_framework_wrapped(m: re.Match) -> ParsedError:
    message, file = m.groups()
    return ParsedError(
        category="build",
        file=normalise_path(_SRC_PREFIX_RE.sub("src/", file)),
        message=message.strip(),
        code="NEXTJS_ERROR",
    )


def _build_react(m: re.Match) -> ParsedError:
    return ParsedError(
        category="jsx",
        message=f"React/JSX: {m.group(1).strip()}",
        code="REACT_ERROR",
    )


PARSE_RULES: tuple[ParseRule, ...] = (
    # ./src/app/page.tsx:158:11
    #   Type error: Type 'number[][]' is not assignable ...
    ParseRule(
        "typescript",
        re.compile(r"\./([^:\s]+):(\d+):(\d+)\s*\n\s*Type error:\s*([^\n]+)"),
        _build_typescript,
    ),
    # ./src/file.tsx:111:6
    #   Unexpected token `DndContext`. Expected jsx identifier
    ParseRule(
        "file_anchored",
        re.compile(r"\./([^:\s]+):(\d+):(\d+)\s*\n\s*(?!Type error:)([A-Z][^\n]+)"),
        _build_file_anchored,
    ),
    # × Unexpected token ...
    #   ╭─[src/file.tsx:12:3]
    ParseRule(
        "pointer",
        re.compile(
            r"[×✕]\s*([^\n]+)"
            r"(?:\s*\n\s*[╭├│╰]─?\[?([^\]:\n]+)?:?(\d+)?:?(\d+)?\]?)?"
        ),
        _build_pointer,
    ),
    ParseRule(
        "module_not_found",
        re.compile(r"Module not found:\s*([^\n]+)"),
        _build_module_not_found,
    ),
    ParseRule(
        "import_export",
        re.compile(r"SyntaxError:\s*([^\n]*(?:import|export)[^\n]*)", re.IGNORECASE),
        _build_import_export,
    ),
    ParseRule(
        "lint_config",
        re.compile(r"ESLint:\s*Invalid Options:\s*([^\n]+)"),
        _build_lint_config,
    ),
    # ./src/file.tsx
    #   7:5  Error: 'x' is assigned a value but never used.
    ParseRule(
        "lint_block",
        re.compile(
            r"\./([^:\s]+)\s*\n\s*(\d+):(\d+)\s+(Error|Warning|error|warning):\s*([^\n]+)"
        ),
        _build_lint_block,
    ),
    ParseRule(
        "lint_inline",
        re.compile(
            r"ESLint:\s*(\d+):(\d+)\s*-\s*(Error|Warning):\s*(.+?)"
            r"(?:\s*\(([^)]+)\))?(?:\n|$)",
            re.MULTILINE,
        ),
        _build_lint_inline,
    ),
    ParseRule(
        "command_failure",
        re.compile(r"Error:\s*Command\s*\"([^\"]+)\"\s*exited\s*with\s*(\d+)"),
        _build_command_failure,
    ),
    ParseRule(
        "failed_to_compile",
        re.compile(r"Failed to compile\.\s*\n\s*\n\s*([^\n]+)"),
        _build_failed_to_compile,
    ),
    ParseRule(
        "framework_wrapped",
        re.compile(r"Error:\s*([^\n]+)\s+in\s+([^\s]+)"),
        _build_framework_wrapped,
    ),
    ParseRule(
        "react",
        re.compile(r"(?:React|JSX)\s+(?:error|Error):\s*([^\n]+)"),
        _build_react,
    ),
)


# ---------------------------------------------------------------------------
# Fallback
# ---------------------------------------------------------------------------

_FAILURE_HINT_RE = re.compile(r"error|failed", re.IGNORECASE)


def _error_like(line: str) -> bool:
    return (
        "error" in line.lower()
        or "×" in line
        or "✕" in line
        or "failed" in line.lower()
    )


def _fallback_error(combined: str, primary: str) -> ParsedError:
    """Synthetic ``build`` error used when no rule recognised the log."""
    candidates = [ln.strip() for ln in combined.splitlines() if _error_like(ln)]
    if candidates:
        return ParsedError(
            category="build",
            message="Build error detected",
            code="UNKNOWN_ERROR",
            context="\n".join(candidates[:MAX_FALLBACK_LINES]),
        )
    return ParsedError(
        category="build",
        message="Unknown build error",
        code="UNKNOWN_ERROR",
        context=primary[:MAX_FALLBACK_CONTEXT_CHARS],
    )


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------

_SUMMARY_LABELS: tuple[tuple[str, str], ...] = (
    ("typescript", "TypeScript"),
    ("syntax", "syntax"),
    ("jsx", "JSX"),
    ("module", "module"),
    ("eslint", "ESLint"),
    ("build", "build"),
)


def summarise_errors(errors: list[ParsedError]) -> str:
    """Return e.g. ``"Build failed with 2 TypeScript error(s), 1 module error(s)"``."""
    if not errors:
        return "No errors found"
    parts: list[str] = []
    for category, label in _SUMMARY_LABELS:
        count = sum(1 for e in errors if e.category == category)
        if count:
            parts.append(f"{count} {label} error(s)")
    return f"Build failed with {', '.join(parts)}"


# ---------------------------------------------------------------------------
# Public functions
# ---------------------------------------------------------------------------


def parse_errors(
    stdout_log: str,
    stderr_log: str = "",
    *,
    failed: bool = False,
    rules: tuple[ParseRule, ...] = PARSE_RULES,
) -> ParsedErrors:
    """Parse build / deployment logs into a ``ParsedErrors``.

    Parameters
    ----------
    stdout_log:
        The build log (platform build output or local stdout).
    stderr_log:
        The error output (platform error message or local stderr).
    failed:
        Caller asserts the build failed.  When set, the result is never
        empty: a synthetic ``build`` error carries the raw excerpt if no
        rule matched.
    rules:
        Ordered rule table; overridable for tests.
    """
    stdout_log = stdout_log or ""
    stderr_log = stderr_log or ""
    combined = f"{stderr_log}\n{stdout_log}"
    primary = stderr_log if stderr_log.strip() else stdout_log

    seen: set[str] = set()
    errors: list[ParsedError] = []
    for rule in rules:
        for m in rule.pattern.finditer(combined):
            err = rule.build(m)
            if err is None or err.dedup_key in seen:
                continue
            seen.add(err.dedup_key)
            errors.append(err)

    if not errors and (failed or stderr_log.strip() or _FAILURE_HINT_RE.search(stdout_log)):
        errors.append(_fallback_error(combined, primary))

    has_category = {c: any(e.category == c for e in errors) for c in CATEGORIES}

    return ParsedErrors(
        errors=errors,
        summary=summarise_errors(errors),
        has_category=has_category,
        raw_error=primary[:MAX_RAW_ERROR_CHARS],
    )


def format_errors_for_prompt(parsed: ParsedErrors) -> str:
    """Render *parsed* as a plain-text block for a fix prompt."""
    if not parsed.errors:
        if parsed.raw_error:
            return f"BUILD ERRORS:\n\nRaw error output:\n{parsed.raw_error}"
        return "No errors to fix"

    lines = ["BUILD ERRORS:", "", parsed.summary, "", "ERRORS TO FIX:", ""]
    for err in parsed.errors:
        lines.append(f"[{err.category.upper()}] {err.location}")
        lines.append(f"  {err.message}")
        if err.context:
            lines.append(f"  Context: {err.context}")
        lines.append("")
    return "\n".join(lines)


def _paths_match(candidate: str, wanted: str) -> bool:
    return candidate == wanted or candidate.endswith(wanted) or wanted.endswith(candidate)


def _is_likely_source(path: str) -> bool:
    lowered = path.lower()
    return ("src/" in lowered or "app/" in lowered) and lowered.endswith(
        (".tsx", ".ts", ".jsx", ".js")
    )


def select_files_to_fix(parsed: ParsedErrors, files: FileSet) -> FileSet:
    """Pick the subset of *files* a fix request should include.

    Files named by an error are matched by suffix in either direction.
    Linter errors pull in linter config files; module errors pull in
    ``package.json``.  When nothing matches, the first few likely source
    files are returned so the fix step still has something to work on.
    """
    wanted: list[str] = []
    for err in parsed.errors:
        if err.file and err.file not in wanted:
            wanted.append(err.file)
    if parsed.has("eslint"):
        wanted.extend(LINT_CONFIG_FILES)
    if parsed.has("module"):
        wanted.append("package.json")

    selected: FileSet = {}
    for path, content in files.items():
        norm = normalise_path(path)
        if any(_paths_match(norm, w) for w in wanted):
            selected[path] = content

    if not selected and parsed.errors:
        likely = [p for p in files if _is_likely_source(p)][:MAX_LIKELY_FILES]
        selected = {p: files[p] for p in likely}

    return selected


__all__ = [
    "CATEGORIES",
    "PARSE_RULES",
    "ParseRule",
    "ParsedError",
    "ParsedErrors",
    "format_errors_for_prompt",
    "parse_errors",
    "select_files_to_fix",
    "summarise_errors",
]
