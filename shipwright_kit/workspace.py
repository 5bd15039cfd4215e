"""Scratch workspace: an on-disk mirror of a FileSet for local builds.

The in-memory FileSet is always the source of truth.  ``write_snapshot``
rewrites the directory from it on every build iteration, keeping only
dependency caches (``node_modules`` and friends) so installs are not
repeated needlessly.  ``needs_install`` reports whether ``package.json``
changed since the last successful install.

``read_tree`` goes the other way: it loads a directory (e.g. a local
template checkout) into a FileSet, skipping VCS metadata, build output,
lockfiles, dotfiles and binary files.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
from pathlib import Path

from shipwright_kit.errors import SandboxViolation
from shipwright_kit.fileset import FileSet, normalise_path

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PRESERVED_DIRS: frozenset[str] = frozenset({"node_modules", ".next", ".turbo"})

DEFAULT_SKIP_DIRS: frozenset[str] = frozenset({
    "node_modules",
    ".git",
    ".next",
    "dist",
    "build",
    ".turbo",
    "coverage",
})

DEFAULT_SKIP_FILES: frozenset[str] = frozenset({
    "package-lock.json",
    "pnpm-lock.yaml",
    "yarn.lock",
    "bun.lockb",
    "pnpm-workspace.yaml",
})

_INSTALL_MARKER = ".shipwright-deps"
_MANIFEST = "package.json"


# ---------------------------------------------------------------------------
# Workspace
# ---------------------------------------------------------------------------


class ScratchWorkspace:
    """Ephemeral build directory rooted at *root* (created if missing)."""

    __slots__ = ("_root",)

    def __init__(self, root: str | Path) -> None:
        path = Path(root).resolve()
        path.mkdir(parents=True, exist_ok=True)
        self._root = path

    @property
    def root(self) -> Path:
        return self._root

    def resolve(self, rel_path: str) -> Path:
        """Resolve *rel_path* inside the workspace.

        Raises
        ------
        SandboxViolation
            If the path is empty, absolute, contains null bytes, traverses
            with ``..``, or resolves outside the root.
        """
        root = str(self._root)
        if not rel_path:
            raise SandboxViolation(rel_path or "", root=root, reason="Path is empty")
        if "\x00" in rel_path:
            raise SandboxViolation(rel_path, root=root, reason="Path contains null bytes")
        if os.path.isabs(rel_path):
            raise SandboxViolation(rel_path, root=root, reason="Absolute paths are not allowed")
        if ".." in rel_path.replace("\\", "/").split("/"):
            raise SandboxViolation(rel_path, root=root, reason="Path traversal with '..' is not allowed")

        target = (self._root / rel_path).resolve()
        try:
            target.relative_to(self._root)
        except ValueError:
            raise SandboxViolation(
                rel_path, root=root, reason="Resolved path is outside workspace root",
            ) from None
        return target

    # -- Snapshot -----------------------------------------------------------

    def clear(self) -> None:
        """Remove everything except preserved dependency caches."""
        for child in self._root.iterdir():
            if child.name in PRESERVED_DIRS or child.name == _INSTALL_MARKER:
                continue
            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child)
            else:
                child.unlink()

    def write_snapshot(self, files: FileSet) -> int:
        """Rewrite the workspace from *files*.  Returns the number written."""
        self.clear()
        for rel_path, content in files.items():
            target = self.resolve(normalise_path(rel_path))
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        logger.debug("Wrote %d file(s) to %s", len(files), self._root)
        return len(files)

    # -- Dependency install tracking ---------------------------------------

    @staticmethod
    def manifest_hash(files: FileSet) -> str:
        return hashlib.sha256(files.get(_MANIFEST, "").encode("utf-8")).hexdigest()

    def needs_install(self, files: FileSet) -> bool:
        """True when dependencies are missing or ``package.json`` changed."""
        if _MANIFEST not in files:
            return False
        if not (self._root / "node_modules").is_dir():
            return True
        marker = self._root / _INSTALL_MARKER
        if not marker.is_file():
            return True
        return marker.read_text(encoding="utf-8").strip() != self.manifest_hash(files)

    def mark_installed(self, files: FileSet) -> None:
        (self._root / _INSTALL_MARKER).write_text(self.manifest_hash(files), encoding="utf-8")


# ---------------------------------------------------------------------------
# Directory → FileSet
# ---------------------------------------------------------------------------


def is_skipped(rel_path: str, *, skip_dirs: frozenset[str] = DEFAULT_SKIP_DIRS,
               skip_files: frozenset[str] = DEFAULT_SKIP_FILES) -> bool:
    """True for paths a FileSet never carries (caches, lockfiles, dotfiles)."""
    parts = normalise_path(rel_path).split("/")
    if any(p in skip_dirs for p in parts[:-1]):
        return True
    name = parts[-1]
    return name in skip_files or name.startswith(".")


def read_tree(root: str | Path) -> FileSet:
    """Load every text file under *root* into a FileSet (sorted by path)."""
    base = Path(root)
    if not base.is_dir():
        raise ValueError(f"Not a directory: {root}")

    files: FileSet = {}
    for dirpath, dirnames, filenames in os.walk(base):
        dirnames[:] = sorted(d for d in dirnames if d not in DEFAULT_SKIP_DIRS)
        for name in sorted(filenames):
            full = Path(dirpath) / name
            rel = full.relative_to(base).as_posix()
            if is_skipped(rel):
                continue
            try:
                content = full.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                logger.debug("Skipping unreadable/binary file %s", rel)
                continue
            if "\x00" in content:
                continue
            files[rel] = content
    return files


__all__ = [
    "DEFAULT_SKIP_DIRS",
    "DEFAULT_SKIP_FILES",
    "PRESERVED_DIRS",
    "ScratchWorkspace",
    "is_skipped",
    "read_tree",
]
