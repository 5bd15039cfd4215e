"""Domain exception hierarchy for Shipwright.

Services raise these instead of bare ``ValueError`` so that the global
exception handler in ``main.py`` can map them to the correct HTTP status
code without fragile string matching.

The pipeline taxonomy (``TransientInfraError`` … ``PatchParseFailure``)
is raised and caught inside the build and deployment loops; only the
resulting classification and its ``to_dict()`` diagnostic reach the job
controller.
"""


class ShipwrightError(Exception):
    """Base for all domain exceptions."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        detail: dict | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail or {}

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "message": self.message, **self.detail}


class NotFoundError(ShipwrightError):
    """Resource not found (404)."""

    def __init__(self, message: str = "Not found"):
        super().__init__(message, status_code=404)


class BadRequestError(ShipwrightError):
    """Client sent an invalid request (400)."""

    def __init__(self, message: str = "Bad request"):
        super().__init__(message, status_code=400)


class ConflictError(ShipwrightError):
    """Request conflicts with current state (409)."""

    def __init__(self, message: str = "Conflict"):
        super().__init__(message, status_code=409)


class JobNotFoundError(NotFoundError):
    """No generation job with the given id."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Generation job {job_id} not found")


class InvalidTransitionError(ShipwrightError):
    """A job status change would move backwards or out of a terminal state."""

    def __init__(self, job_id: str, current: str, target: str):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(
            f"Job {job_id}: cannot move from {current!r} to {target!r}",
            status_code=409,
            detail={"job_id": job_id, "current": current, "target": target},
        )


# ---------------------------------------------------------------------------
# External collaborators
# ---------------------------------------------------------------------------


class GenerationFatalError(ShipwrightError):
    """The generation service rejected the request; retrying cannot help."""

    def __init__(self, message: str, *, status: int | None = None, model: str = ""):
        self.status = status
        self.model = model
        super().__init__(
            message, status_code=502, detail={"status": status, "model": model},
        )


class GenerationUnavailableError(ShipwrightError):
    """The generation service stayed overloaded / unreachable for every attempt."""

    def __init__(self, message: str, *, attempts: int, model: str = ""):
        self.attempts = attempts
        self.model = model
        super().__init__(
            message, status_code=503, detail={"attempts": attempts, "model": model},
        )


class DeployPlatformError(ShipwrightError):
    """The deployment platform returned an unusable response."""

    def __init__(self, message: str, *, status: int | None = None):
        self.status = status
        super().__init__(message, status_code=502, detail={"status": status})


class TemplateFetchError(ShipwrightError):
    """The project template could not be loaded."""

    def __init__(self, message: str, *, source: str = ""):
        self.source = source
        super().__init__(message, status_code=502, detail={"source": source})


# ---------------------------------------------------------------------------
# Pipeline taxonomy
# ---------------------------------------------------------------------------


class PipelineError(ShipwrightError):
    """Base for failures classified inside the build / deploy loops."""


class TransientInfraError(PipelineError):
    """Network / timeout failure; retried with backoff, never fixed."""

    def __init__(self, message: str, *, attempt: int = 0):
        self.attempt = attempt
        super().__init__(message, detail={"attempt": attempt})


class ContentBuildError(PipelineError):
    """Compiler / linter / module failure, routed through the fix loop."""

    def __init__(self, message: str, *, signature: str = "", log_excerpt: str = ""):
        self.signature = signature
        self.log_excerpt = log_excerpt
        super().__init__(
            message, detail={"signature": signature, "log_excerpt": log_excerpt},
        )


class StuckError(PipelineError):
    """The same error signature kept coming back; further retries are futile."""

    def __init__(self, signature: str, attempts: int, *, last_error: str = ""):
        self.signature = signature
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Stuck on the same error after {attempts} consecutive attempt(s)",
            detail={"signature": signature, "attempts": attempts, "last_error": last_error},
        )


class ExhaustedRetriesError(PipelineError):
    """Every allowed attempt failed without a repeated-error stop."""

    def __init__(self, attempts: int, *, signature: str = "", last_error: str = ""):
        self.attempts = attempts
        self.signature = signature
        self.last_error = last_error
        super().__init__(
            f"Deployment failed after {attempts} attempt(s)",
            detail={"signature": signature, "attempts": attempts, "last_error": last_error},
        )


class PatchParseFailure(PipelineError):
    """A fix response could not be turned into diffs or whole files."""

    def __init__(self, message: str, *, raw_length: int = 0):
        self.raw_length = raw_length
        super().__init__(message, detail={"raw_length": raw_length})


def format_error_response(
    *,
    error: str,
    detail: object = None,
    request_id: str = "",
) -> dict:
    """Build a structured error response dict.

    Parameters
    ----------
    error : str
        Short error title (e.g. ``"Internal Server Error"``).
    detail : object
        Human-readable detail string or validation error list.
    request_id : str
        The request ID for tracing.

    Returns
    -------
    dict
        ``{"error": ..., "detail": ..., "request_id": ...}``
    """
    return {
        "error": error,
        "detail": detail if detail is not None else error,
        "request_id": request_id,
    }
