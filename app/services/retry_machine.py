"""Retry state machine shared by the build and deployment loops.

Every attempt starts in ``ATTEMPTING`` and leaves it for exactly one of:

    SUCCESS          the attempt worked                       (terminal)
    RETRYING         infrastructure hiccup, try again as-is
    FIXING_CONTENT   the code is wrong, ask for a fix first
    STUCK            same error signature too many times      (terminal)
    EXHAUSTED        no attempts left                         (terminal)

``RETRYING`` and ``FIXING_CONTENT`` lead back to ``ATTEMPTING``.

``RetryTracker`` owns the attempt counter and the consecutive-signature
counter.  Transient failures neither reset nor advance the signature
streak: they say nothing about the code.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class RetryState(str, Enum):
    ATTEMPTING = "attempting"
    SUCCESS = "success"
    RETRYING = "retrying"
    FIXING_CONTENT = "fixing_content"
    STUCK = "stuck"
    EXHAUSTED = "exhausted"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({RetryState.SUCCESS, RetryState.STUCK, RetryState.EXHAUSTED})

TRANSITIONS: dict[RetryState, frozenset[RetryState]] = {
    RetryState.ATTEMPTING: frozenset({
        RetryState.SUCCESS,
        RetryState.RETRYING,
        RetryState.FIXING_CONTENT,
        RetryState.STUCK,
        RetryState.EXHAUSTED,
    }),
    RetryState.RETRYING: frozenset({RetryState.ATTEMPTING}),
    RetryState.FIXING_CONTENT: frozenset({RetryState.ATTEMPTING}),
    RetryState.SUCCESS: frozenset(),
    RetryState.STUCK: frozenset(),
    RetryState.EXHAUSTED: frozenset(),
}

EXCERPT_CHARS = 500


@dataclass(frozen=True)
class AttemptRecord:
    """How one attempt ended."""

    attempt: int
    outcome: RetryState
    signature: str = ""
    error: str = ""

    def to_dict(self) -> dict:
        return {
            "attempt": self.attempt,
            "outcome": self.outcome.value,
            "signature": self.signature,
            "error": self.error,
        }


@dataclass
class RetryTracker:
    """Bounded attempt loop with repeated-error detection.

    Parameters
    ----------
    max_attempts:
        Attempts allowed in total, transient ones included.
    stuck_threshold:
        Consecutive content failures with an identical signature that
        count as stuck.  The loop stops on the attempt that reaches it.
    """

    max_attempts: int
    stuck_threshold: int
    state: RetryState = RetryState.ATTEMPTING
    attempt: int = 0
    consecutive: int = 0
    last_signature: str = ""
    last_error: str = ""
    history: list[AttemptRecord] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.stuck_threshold < 2:
            raise ValueError("stuck_threshold must be >= 2")

    # -- transitions -----------------------------------------------------------

    def _move(self, target: RetryState) -> RetryState:
        if target not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal retry transition {self.state.value} -> {target.value}")
        self.state = target
        return target

    def begin_attempt(self) -> int:
        """Start the next attempt and return its 1-based number."""
        if self.attempt == 0 and self.state is RetryState.ATTEMPTING:
            self.attempt = 1
            return 1
        self._move(RetryState.ATTEMPTING)
        self.attempt += 1
        return self.attempt

    def record_success(self) -> RetryState:
        self.history.append(AttemptRecord(self.attempt, RetryState.SUCCESS))
        return self._move(RetryState.SUCCESS)

    def record_transient(self, error: str) -> RetryState:
        """A failure outside the code (network, platform): retry unchanged while attempts remain."""
        self.last_error = error
        target = RetryState.EXHAUSTED if self.attempt >= self.max_attempts else RetryState.RETRYING
        self.history.append(
            AttemptRecord(self.attempt, target, self.last_signature, error[:EXCERPT_CHARS])
        )
        return self._move(target)

    def record_content_failure(self, signature: str, error: str) -> RetryState:
        """A failure caused by the code itself.

        Returns ``STUCK`` when *signature* has now been seen on
        ``stuck_threshold`` consecutive content failures, ``EXHAUSTED``
        on the last attempt, else ``FIXING_CONTENT``.
        """
        if signature and signature == self.last_signature:
            self.consecutive += 1
        else:
            self.consecutive = 1
        self.last_signature = signature
        self.last_error = error

        if self.consecutive >= self.stuck_threshold:
            target = RetryState.STUCK
        elif self.attempt >= self.max_attempts:
            target = RetryState.EXHAUSTED
        else:
            target = RetryState.FIXING_CONTENT
        self.history.append(AttemptRecord(self.attempt, target, signature, error[:EXCERPT_CHARS]))
        return self._move(target)

    # -- queries ---------------------------------------------------------------

    @property
    def done(self) -> bool:
        return self.state.is_terminal

    @property
    def stuck(self) -> bool:
        return self.state is RetryState.STUCK

    @property
    def remaining(self) -> int:
        return max(self.max_attempts - self.attempt, 0)


__all__ = [
    "AttemptRecord",
    "RetryState",
    "RetryTracker",
    "TRANSITIONS",
]
