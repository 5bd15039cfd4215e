"""Kit error hierarchy.

Every error carries typed fields (not just a message string),
supports ``to_dict()`` for serialisation into job diagnostics,
and has a readable ``__str__`` for logging.
"""

from __future__ import annotations


class KitError(Exception):
    """Base error for all kit failures."""

    def __init__(self, message: str, *, detail: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "message": self.message, **self.detail}

    def __str__(self) -> str:
        return self.message


class SandboxViolation(KitError):
    """A path or command escaped the scratch workspace rules."""

    def __init__(self, path: str, *, root: str | None = None, reason: str | None = None) -> None:
        self.path = path
        self.root = root or ""
        self.reason = reason or ""

        if reason:
            msg = f"Sandbox violation: {reason} (path={path!r})"
        else:
            msg = f"Sandbox violation: '{path}' is outside the workspace"

        detail: dict = {"path": path}
        if root:
            detail["root"] = root
        if reason:
            detail["reason"] = reason
        super().__init__(msg, detail=detail)


class ParseError(KitError):
    """Generator output or diff text could not be parsed."""

    def __init__(self, raw_output: str, parser_name: str, *, reason: str = "") -> None:
        self.raw_output = raw_output
        self.parser_name = parser_name
        self.reason = reason
        msg = f"Parser '{parser_name}' failed to parse output ({len(raw_output)} chars)"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(
            msg,
            detail={
                "parser_name": parser_name,
                "raw_output_length": len(raw_output),
                "reason": reason,
            },
        )


class PatchConflict(KitError):
    """A diff hunk does not match the target file content."""

    def __init__(
        self, file_path: str, hunk_index: int, expected: str, actual: str
    ) -> None:
        self.file_path = file_path
        self.hunk_index = hunk_index
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Patch conflict in '{file_path}' at hunk {hunk_index}",
            detail={
                "file_path": file_path,
                "hunk_index": hunk_index,
                "expected": expected,
                "actual": actual,
            },
        )


__all__ = [
    "KitError",
    "ParseError",
    "PatchConflict",
    "SandboxViolation",
]
