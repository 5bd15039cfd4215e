"""Error signatures: stable fingerprints for "same error again" detection.

Two failures with the same signature are treated as the same underlying
error even when line numbers or absolute paths moved between attempts.
Signatures are for comparison only; they are never shown to a model.
"""

from __future__ import annotations

import re

MAX_SIGNATURE_LENGTH: int = 200

_LINE_COL_RE = re.compile(r"\d+:\d+")
_LINE_WORD_RE = re.compile(r"line \d+")
_PATH_RE = re.compile(r"/[^\s:]+/")
_WHITESPACE_RE = re.compile(r"\s+")


def error_signature(error_text: str) -> str:
    """Return the normalised signature of *error_text*.

    Steps, in order: lowercase, ``12:5`` → ``LINE:COL``, ``line 12`` →
    ``line N``, directory prefixes → ``/PATH/``, whitespace collapsed
    to single spaces (so the result is a single line), truncated to 200 chars.
    Empty input gives an empty signature.
    """
    if not error_text:
        return ""

    text = error_text.lower()
    text = _LINE_COL_RE.sub("LINE:COL", text)
    text = _LINE_WORD_RE.sub("line N", text)
    text = _PATH_RE.sub("/PATH/", text)
    text = _WHITESPACE_RE.sub(" ", text).strip()
    return text[:MAX_SIGNATURE_LENGTH]


def same_error(a: str, b: str) -> bool:
    """True when two error texts normalise to the same non-empty signature."""
    sig_a = error_signature(a)
    return bool(sig_a) and sig_a == error_signature(b)


__all__ = [
    "MAX_SIGNATURE_LENGTH",
    "error_signature",
    "same_error",
]
