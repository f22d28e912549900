"""Session engine error classes.

Every engine error carries a machine-readable code, a human-readable message,
optional structured details, and whether the operation may be retried.
Callers (UI layer, background workers) map these onto user-visible prompts.
"""

from typing import Any


class SessionError(Exception):
    """Base class for session engine errors.

    Attributes:
        code: Machine-readable error code (e.g., "VALIDATION_ERROR").
        message: Human-readable error message.
        details: Optional list of additional error details.
        retryable: Whether retrying the same operation may succeed.
    """

    def __init__(
        self,
        code: str,
        message: str,
        details: list[dict[str, Any]] | None = None,
        *,
        retryable: bool = False,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details
        self.retryable = retryable
        super().__init__(message)


class ValidationError(SessionError):
    """A local invariant would be violated.

    Raised synchronously; the state the operation targeted is left unchanged.
    """

    def __init__(
        self,
        message: str,
        details: list[dict[str, Any]] | None = None,
    ) -> None:
        super().__init__(code="VALIDATION_ERROR", message=message, details=details)


class InvalidTransitionError(ValidationError):
    """Attempted a state transition that the state machine does not allow.

    Used for substep status transitions and processing job transitions.
    """

    def __init__(
        self,
        subject: str,
        current: str,
        target: str,
        valid_targets: list[str],
    ) -> None:
        self.subject = subject
        self.current = current
        self.target = target
        self.valid_targets = valid_targets
        super().__init__(
            f"Cannot transition {subject} from {current} to {target}. "
            f"Valid transitions: {valid_targets or 'none (terminal state)'}",
        )
        self.code = "INVALID_TRANSITION"


class SessionNotFoundError(SessionError):
    """No session document exists for the requested id."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(
            code="SESSION_NOT_FOUND",
            message=f"Session with id '{session_id}' not found",
        )


class DependencyError(SessionError):
    """A feature or job dependency is unmet.

    Args:
        subject_id: The feature or job whose operation was rejected.
        unmet: Ids of the dependencies blocking the operation.
        message: Optional override for the default message.
    """

    def __init__(
        self,
        subject_id: str,
        unmet: list[str],
        message: str | None = None,
    ) -> None:
        self.subject_id = subject_id
        self.unmet = unmet
        super().__init__(
            code="DEPENDENCY_ERROR",
            message=message
            or f"'{subject_id}' has unmet dependencies: {', '.join(unmet)}",
            details=[{"subject_id": subject_id, "unmet": list(unmet)}],
        )


class ConflictError(SessionError):
    """Reconciliation with the remote store did not converge."""

    def __init__(self, session_id: str, attempts: int) -> None:
        self.session_id = session_id
        self.attempts = attempts
        super().__init__(
            code="CONFLICT",
            message=(
                f"Session '{session_id}' could not be synchronized after "
                f"{attempts} attempts; remote keeps advancing"
            ),
            retryable=True,
        )


class RetryableError(SessionError):
    """Transient failure of a job or action; the retry budget applies."""

    def __init__(self, message: str) -> None:
        super().__init__(code="RETRYABLE", message=message, retryable=True)


class TerminalError(SessionError):
    """Retry budget exhausted or a non-retryable failure.

    Args:
        subject_id: Job or action id that failed.
        last_error: The last error message observed.
    """

    def __init__(self, subject_id: str, last_error: str) -> None:
        self.subject_id = subject_id
        self.last_error = last_error
        super().__init__(
            code="TERMINAL",
            message=f"'{subject_id}' failed permanently: {last_error}",
        )


class ExpressionError(SessionError):
    """A rule condition is malformed or uses a disallowed construct."""

    def __init__(self, expression: str, reason: str) -> None:
        self.expression = expression
        self.reason = reason
        super().__init__(
            code="INVALID_EXPRESSION",
            message=f"Invalid condition {expression!r}: {reason}",
        )
