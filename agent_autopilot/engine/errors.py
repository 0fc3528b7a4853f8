"""Error taxonomy for the automation engine."""

from __future__ import annotations


class AutopilotError(Exception):
    """Base class for engine errors."""


class ClassificationAmbiguous(AutopilotError):
    """No classifier rule matched; the output falls through to the LLM path.

    Not raised by the classifier itself. Used as the label when an
    unclassified evaluation is logged.
    """


class DecisionError(AutopilotError):
    """A decision call failed in a way the retry policy may recover from."""


class DecisionParseError(DecisionError):
    """The provider answered, but not with a valid `{action, text}` object."""

    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class DecisionNetworkError(DecisionError):
    """Timeout, rate limit, or transport failure talking to the provider."""

    def __init__(self, message: str, status: int | None = None, retryable: bool = True) -> None:
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class SessionProcessExited(AutopilotError):
    """The terminal process behind a session died."""

    def __init__(self, session_id: str, exit_code: int | None = None) -> None:
        detail = f" (exit code {exit_code})" if exit_code is not None else ""
        super().__init__(f"Terminal {session_id} exited{detail}")
        self.session_id = session_id
        self.exit_code = exit_code


class ReadinessTimeout(AutopilotError):
    """The readiness pattern was not seen in time and the task was force-sent."""

    def __init__(self, session_id: str, timeout_s: float) -> None:
        super().__init__(f"Terminal {session_id} not ready after {timeout_s:.1f}s")
        self.session_id = session_id
        self.timeout_s = timeout_s


class MaxRetriesExceeded(AutopilotError):
    """The retry policy gave up; the owning session becomes Errored."""

    def __init__(self, key: str, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(f"{key}: giving up after {attempts} attempts: {last_error}")
        self.key = key
        self.attempts = attempts
        self.last_error = last_error


class InsufficientSessionsError(AutopilotError):
    """Fewer sessions than a multi-session mode requires could be created."""

    def __init__(self, required: int, created: int) -> None:
        super().__init__(f"Need {required} terminal sessions, could only create {created}")
        self.required = required
        self.created = created
