"""Error taxonomy for the revenue aggregation engine.

Kinds:
- validation: caller error (missing/malformed period, payload or event). Not retried.
- conflict: a uniqueness race on the period or contribution key. Safe to retry.
- infrastructure: persistence unavailable or failing. Not retried by the engine;
  the repository caller owns any backoff.
- invariant: a contract break upstream (e.g. an unknown invoice status). Fatal.

Errors keep their kind as they propagate; layers only add context.
"""

from typing import Any, Self


class RevenueError(Exception):
    """Base class for all revenue engine errors."""

    kind = "revenue"
    retryable = False

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = dict(context)

    def with_context(self, **context: Any) -> Self:
        """Attach extra context without changing the error kind.

        Keys already present are kept, so the innermost layer wins.
        """
        for key, value in context.items():
            self.context.setdefault(key, value)
        return self

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in sorted(self.context.items()))
        return f"{self.message} ({details})"


class RevenueValidationError(RevenueError):
    """Missing or malformed input."""

    kind = "validation"


class RevenueConflictError(RevenueValidationError):
    """Concurrent writer won the race for the same unique key."""

    kind = "conflict"
    retryable = True


class RevenueInfrastructureError(RevenueError):
    """Unexpected persistence failure."""

    kind = "infrastructure"


class InvariantViolationError(RevenueError):
    """A value that must never reach this layer did."""

    kind = "invariant"
