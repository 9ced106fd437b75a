"""Error taxonomy for the escalation backend.

Components raise these exceptions; the service boundary
(``escalation_service.EscalationService``) converts them into typed
``OperationResult`` payloads so no exception crosses the public API.

Hierarchy::

    EscalationError
    ├── InvalidInput
    │   └── InvalidBudget
    ├── SessionError
    │   ├── SessionNotFound
    │   ├── SessionNotActive
    │   ├── SessionFailed
    │   └── BudgetExhausted
    └── RemoteFailure
        ├── RateLimited
        ├── TransientFailure
        ├── RemoteTimeout
        └── PermanentFailure
            └── CircuitOpen
"""

from typing import Any


class EscalationError(Exception):
    """Base class for all errors raised by the escalation backend.

    Attributes:
        code: Stable machine-readable error code.
        retryable: Whether the caller may retry the same operation unchanged.
    """

    code = "escalation_error"
    retryable = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def details(self) -> dict[str, Any]:
        """Extra structured context exposed alongside the error message."""
        return {}


# -----------------------------------------------------------------------------
# Input validation
# -----------------------------------------------------------------------------


class InvalidInput(EscalationError):
    """A request failed semantic validation."""

    code = "invalid_input"


class InvalidBudget(InvalidInput):
    """A session or tournament budget was zero or negative."""

    code = "invalid_budget"


# -----------------------------------------------------------------------------
# Session lifecycle
# -----------------------------------------------------------------------------


class SessionError(EscalationError):
    """Base class for errors tied to a specific conversation session."""

    code = "session_error"

    def __init__(
        self,
        session_id: str,
        message: str = "",
        state: str | None = None,
    ) -> None:
        super().__init__(message or f"{self.code}: {session_id}")
        self.session_id = session_id
        self.state = state

    def details(self) -> dict[str, Any]:
        data: dict[str, Any] = {"session_id": self.session_id}
        if self.state is not None:
            data["state"] = str(self.state)
        return data


class SessionNotFound(SessionError):
    """The session id is unknown or the session was evicted."""

    code = "session_not_found"


class SessionNotActive(SessionError):
    """The session is in a state that does not accept the operation."""

    code = "session_not_active"


class SessionFailed(SessionError):
    """The session hit a permanent failure earlier and accepts no more turns."""

    code = "session_failed"


class BudgetExhausted(SessionError):
    """The session's turn or time budget is spent."""

    code = "budget_exhausted"


# -----------------------------------------------------------------------------
# Remote reasoning service
# -----------------------------------------------------------------------------


class RemoteFailure(EscalationError):
    """Base class for failures talking to the remote reasoning service.

    Attributes:
        backend: Logical backend (model) the call was addressed to.
        cause: The underlying exception, when there is one.
    """

    code = "remote_failure"

    def __init__(
        self,
        message: str = "",
        *,
        backend: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.cause = cause

    def details(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.backend is not None:
            data["backend"] = self.backend
        if self.cause is not None:
            data["cause"] = type(self.cause).__name__
        return data


class RateLimited(RemoteFailure):
    """The call could not be admitted by the rate limiter or the provider."""

    code = "rate_limited"
    retryable = True

    def __init__(
        self,
        message: str = "",
        *,
        retry_after: float | None = None,
        backend: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, backend=backend, cause=cause)
        self.retry_after = retry_after

    def details(self) -> dict[str, Any]:
        data = super().details()
        if self.retry_after is not None:
            data["retry_after"] = round(self.retry_after, 3)
        return data


class TransientFailure(RemoteFailure):
    """A failure that may succeed on retry (5xx, connection reset)."""

    code = "transient_failure"
    retryable = True


class RemoteTimeout(RemoteFailure):
    """The remote call exceeded its per-call timeout or the caller deadline."""

    code = "remote_timeout"
    retryable = True


class PermanentFailure(RemoteFailure):
    """A failure that will not succeed on retry (auth, malformed request)."""

    code = "permanent_failure"


class CircuitOpen(PermanentFailure):
    """The backend's circuit breaker is open; no network call was attempted."""

    code = "circuit_open"
