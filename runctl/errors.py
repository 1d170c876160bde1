"""Error hierarchy for runctl.

Every failure surfaced by the client, the watcher or the orchestration
helpers is a ``RunError``. Only ``NotFoundError`` is ever downgraded to a
normal result (by ``service_exists``); everything else propagates.
"""

from __future__ import annotations


class RunError(Exception):
    """Base class for all runctl errors."""


class ConfigError(RunError):
    """Invalid or incomplete configuration."""


class ApiError(RunError):
    """Structured error answered by the control plane."""

    def __init__(self, status: int, message: str) -> None:
        self.status = status
        self.message = message
        super().__init__(f"API error {status}: {message}")


class NotFoundError(ApiError):
    """The resource does not exist (HTTP 404)."""


class ConflictError(ApiError):
    """Write rejected because its base version was stale (HTTP 409)."""


class TransportError(RunError):
    """The request never got an answer (connection failure, timeout)."""


class AuthError(RunError):
    """Google credentials could not be loaded or refreshed."""


class FetchError(RunError):
    """Querying a resource's status failed while waiting on it."""

    def __init__(self, name: str, cause: Exception) -> None:
        self.name = name
        self.cause = cause
        super().__init__(f"failed to query service {name!r} for readiness: {cause}")


class ConditionFailedError(RunError):
    """The watched condition reached an explicit ``False`` status."""

    def __init__(self, name: str, condition: str, reason: str, message: str) -> None:
        self.name = name
        self.condition = condition
        self.reason = reason
        self.message = message
        super().__init__(
            f"service {name!r} could not become {condition!r} "
            f"(reason: {reason or 'unknown'}) {message}".rstrip()
        )


class WaitTimeoutError(RunError, TimeoutError):
    """No terminal signal was observed before the deadline."""

    def __init__(self, name: str, condition: str, timeout: float | None) -> None:
        self.name = name
        self.condition = condition
        self.timeout = timeout
        budget = f" after {timeout:.1f}s" if timeout is not None else ""
        super().__init__(f"timed out waiting for service {name!r} to become {condition!r}{budget}")


class TrafficSplitError(RunError, ValueError):
    """Traffic allocations are malformed or do not sum to 100."""
