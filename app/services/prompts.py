"""Prompt builders for the three generation stages.

Every builder returns ``(system_prompt, user_prompt)`` for
``GenerationGateway.complete()``.  All three stages ask for the same
response format so one parser (``shipwright_kit.response_parser``)
handles every reply.
"""

from shipwright_kit.fileset import FileSet
from shipwright_kit.log_parser import ParsedErrors, format_errors_for_prompt

# Cap on the prior conversation turns replayed into a prompt.
MAX_HISTORY_TURNS = 10

_APP_CONTEXT = {
    "farcaster": (
        "a Farcaster mini app: a Next.js 15 (App Router) + TypeScript + "
        "Tailwind project that runs inside a Farcaster client"
    ),
    "web3": (
        "a web3 mini app: a Next.js 15 (App Router) + TypeScript + Tailwind "
        "front end with Solidity contracts under contracts/ (Hardhat)"
    ),
}

_RESPONSE_FORMAT = """\
RESPONSE FORMAT:
Return ONLY a JSON array, no prose and no markdown fences.  One entry \
per file you create or change:

[
  {"filename": "src/app/page.tsx", "content": "<complete file content>"},
  {"filename": "src/lib/util.ts", "unifiedDiff": "@@ -3,2 +3,3 @@\\n ..."}
]

Use "content" for new files and for rewrites.  Use "unifiedDiff" for \
small edits to existing files; context lines must match the current \
file exactly.  Never include lockfiles, node_modules or build output."""

_GENERATE_SYSTEM_PROMPT = """\
You are Shipwright's application generator.  You build {app_context}.

You receive the user's request and the project template.  Extend the \
template into a complete, working application:
- Keep the template's configuration files, layout and providers unless \
the request requires changing them.
- Every import must resolve to a file in the project or a dependency \
in package.json.  Add new dependencies to package.json.
- The project must pass `next build` with strict TypeScript and the \
template's ESLint rules.
{contracts_rule}
{response_format}"""

_EDIT_SYSTEM_PROMPT = """\
You are Shipwright's application editor.  You modify an existing \
{app_context}.

Apply the user's requested change and nothing else.  Prefer small \
unified diffs; rewrite a file only when most of it changes.  The \
project must still pass `next build`.

{response_format}"""

_FIX_SYSTEM_PROMPT = """\
You are Shipwright's build fixer.  A build of {app_context} failed.

You receive the parsed errors and the affected files with numbered \
lines; lines with errors are marked with ">>>".  Fix the root cause \
with the smallest change that makes the build pass:
- Fix every listed error.  Do not refactor or restyle unrelated code.
- Missing modules: fix the import path, or add the package to \
package.json.
- Lint errors: fix the code; only touch lint config when the error is \
about the config itself.

{response_format}"""

_CONTRACTS_RULE = (
    "- Put Solidity sources under contracts/.  Reference deployed "
    "addresses through the placeholder tokens __<CONTRACT_NAME>_ADDRESS__ "
    "(upper snake case); they are replaced after the contracts deploy.\n"
)


def _app_context(app_type: str) -> str:
    return _APP_CONTEXT.get(app_type, _APP_CONTEXT["farcaster"])


def _render_files(files: FileSet) -> str:
    return "\n\n".join(f"=== FILE: {path} ===\n{content}" for path, content in files.items())


def _render_history(history: list[dict] | None) -> str:
    if not history:
        return ""
    turns = history[-MAX_HISTORY_TURNS:]
    lines = ["CONVERSATION SO FAR:"]
    for turn in turns:
        role = str(turn.get("role", "user")).upper()
        lines.append(f"{role}: {turn.get('content', '')}")
    return "\n".join(lines) + "\n\n"


def number_lines(content: str, error_lines: set[int] | frozenset[int] = frozenset()) -> str:
    """Render *content* with 1-based line numbers, marking *error_lines* with ``>>>``."""
    out = []
    for idx, line in enumerate(content.split("\n"), start=1):
        marker = ">>> " if idx in error_lines else "    "
        out.append(f"{marker}{idx}: {line}")
    return "\n".join(out)


def build_generate_prompt(
    request: str,
    template_files: FileSet,
    app_type: str,
    history: list[dict] | None = None,
) -> tuple[str, str]:
    system = _GENERATE_SYSTEM_PROMPT.format(
        app_context=_app_context(app_type),
        contracts_rule=_CONTRACTS_RULE if app_type == "web3" else "",
        response_format=_RESPONSE_FORMAT,
    )
    user = (
        f"{_render_history(history)}"
        f"REQUEST:\n{request}\n\n"
        f"TEMPLATE FILES:\n\n{_render_files(template_files)}"
    )
    return system, user


def build_edit_prompt(
    request: str,
    files: FileSet,
    app_type: str,
    history: list[dict] | None = None,
) -> tuple[str, str]:
    system = _EDIT_SYSTEM_PROMPT.format(
        app_context=_app_context(app_type),
        response_format=_RESPONSE_FORMAT,
    )
    user = (
        f"{_render_history(history)}"
        f"REQUESTED CHANGE:\n{request}\n\n"
        f"CURRENT PROJECT FILES:\n\n{_render_files(files)}"
    )
    return system, user


def build_fix_prompt(parsed: ParsedErrors, files_to_fix: FileSet, app_type: str) -> tuple[str, str]:
    """Fix prompt: the error report plus each affected file, numbered and marked."""
    system = _FIX_SYSTEM_PROMPT.format(
        app_context=_app_context(app_type),
        response_format=_RESPONSE_FORMAT,
    )

    by_file = parsed.by_file()
    sections = [format_errors_for_prompt(parsed), "", "FILES:"]
    for path, content in files_to_fix.items():
        errors = next(
            (errs for name, errs in by_file.items()
             if path == name or path.endswith(name) or name.endswith(path)),
            [],
        )
        sections.append(f"\n### {path}")
        if errors:
            sections.append("Errors in this file:")
            for err in errors:
                sections.append(f"  - Line {err.line or '?'}: {err.message}")
        marked = {err.line for err in errors if err.line}
        sections.append("File content (errors marked with >>>):")
        sections.append(number_lines(content, marked))
    return system, "\n".join(sections)
