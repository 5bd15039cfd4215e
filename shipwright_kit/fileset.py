"""FileSet helpers: the in-memory project snapshot passed between stages.

A ``FileSet`` is a plain ``dict[str, str]`` mapping a relative path
(``/`` separators, no leading ``./``) to file content.  Every stage
receives a complete snapshot and returns a new one; none of these
helpers mutate their inputs.
"""

from __future__ import annotations

from typing import Callable, Iterable, TypeAlias

FileSet: TypeAlias = dict[str, str]


def normalise_path(path: str) -> str:
    """Return *path* with ``\\`` → ``/`` and any leading ``./`` or ``/`` removed."""
    p = path.strip().replace("\\", "/")
    while p.startswith("./"):
        p = p[2:]
    return p.lstrip("/")


def merge(base: FileSet, updates: FileSet) -> FileSet:
    """Return a new FileSet with *updates* overlaid on *base* (order kept)."""
    merged = dict(base)
    for path, content in updates.items():
        merged[normalise_path(path)] = content
    return merged


def drop(files: FileSet, predicate: Callable[[str], bool]) -> FileSet:
    """Return a copy of *files* without the paths matching *predicate*."""
    return {p: c for p, c in files.items() if not predicate(p)}


def without_prefix(files: FileSet, prefixes: Iterable[str]) -> FileSet:
    """Return a copy of *files* without paths under any of *prefixes*."""
    pfx = tuple(prefixes)
    return drop(files, lambda p: p.startswith(pfx))


def without_null_bytes(files: FileSet) -> tuple[FileSet, list[str]]:
    """Split out files containing NUL bytes (these cannot be persisted as text).

    Returns ``(clean_files, skipped_paths)``.
    """
    clean: FileSet = {}
    skipped: list[str] = []
    for path, content in files.items():
        if "\x00" in content:
            skipped.append(path)
        else:
            clean[path] = content
    return clean, skipped


def has_contracts(files: FileSet) -> bool:
    """True when the snapshot contains Solidity sources under ``contracts/``."""
    return any(p.startswith("contracts/") and p.endswith(".sol") for p in files)


__all__ = [
    "FileSet",
    "drop",
    "has_contracts",
    "merge",
    "normalise_path",
    "without_null_bytes",
    "without_prefix",
]
