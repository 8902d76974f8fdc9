"""Error taxonomy shared by the stratactl engine.

Structural errors (:class:`PlanError` and its subclasses) are raised before
any provider call is made. Runtime errors are contained to the operation that
raised them and reported through :class:`~stratactl.executor.ApplyReport`.
"""
from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .executor.models import ApplyReport


class StratactlError(RuntimeError):
    """Base class for all errors raised by stratactl."""


class PlanError(StratactlError):
    """Raised when a configuration cannot be turned into a plan."""


class SchemaError(PlanError):
    """Raised when a declared resource is malformed or misses required fields."""


class UnresolvedReferenceError(PlanError):
    """Raised when a reference points at a resource that is not declared."""

    def __init__(self, source: str, target: str, detail: str | None = None) -> None:
        """Record the referencing address and the missing target."""
        self.source = source
        self.target = target
        message = f"{source} references undeclared resource '{target}'"
        if detail:
            message = f"{source} references '{target}': {detail}"
        super().__init__(message)


class CycleError(PlanError):
    """Raised when resource references form a cycle."""

    def __init__(self, participants: Sequence[str]) -> None:
        """Record the resources taking part in the cycle, in cycle order."""
        self.participants = tuple(participants)
        chain = " -> ".join((*self.participants, self.participants[0]))
        super().__init__(f"Dependency cycle detected: {chain}")


class ProviderError(StratactlError):
    """Base class for typed provider API failures."""

    code = "ProviderError"
    retryable = False

    def __init__(self, message: str, *, operation: str | None = None) -> None:
        """Store the failing provider call alongside the message."""
        self.operation = operation
        super().__init__(message)


class RateLimitedError(ProviderError):
    """The provider throttled the request; callers may retry."""

    code = "RateLimited"
    retryable = True


class ConflictError(ProviderError):
    """The provider rejected the call because of conflicting state."""

    code = "Conflict"


class NotFoundError(ProviderError):
    """The provider does not know the referenced object."""

    code = "NotFound"


class InvalidParameterError(ProviderError):
    """The provider rejected an input value."""

    code = "InvalidParameter"


class FatalProviderError(ProviderError):
    """The provider cannot be used at all (credentials, endpoint, outage)."""

    code = "Fatal"


class SSHConnectionError(StratactlError):
    """Raised when an SSH session cannot be established."""


class ProvisionerError(StratactlError):
    """Base class for provisioner step failures."""


class ProvisionerTimeoutError(ProvisionerError):
    """Raised when the instance never became reachable within the attempt ceiling."""

    def __init__(self, host: str, attempts: int, last_error: str | None = None) -> None:
        """Record the target host and how many connection attempts were made."""
        self.host = host
        self.attempts = attempts
        self.last_error = last_error
        message = f"Could not connect to {host} after {attempts} attempt(s)"
        if last_error:
            message += f": {last_error}"
        super().__init__(message)


class TransferError(ProvisionerError):
    """Raised when copying a file over an established session fails."""


class CredentialPersistenceError(OSError):
    """Raised when credential material cannot be written to disk."""


class PartialApplyFailure(StratactlError):
    """Aggregate error describing an apply cycle that did not fully succeed."""

    def __init__(self, report: ApplyReport) -> None:
        """Keep the report so callers can enumerate every operation outcome."""
        self.report = report
        totals = report.summary.totals
        super().__init__(
            "Apply finished with failures: "
            + ", ".join(f"{status.value}={count}" for status, count in totals.items() if count)
        )


__all__ = [
    "ConflictError",
    "CredentialPersistenceError",
    "CycleError",
    "FatalProviderError",
    "InvalidParameterError",
    "NotFoundError",
    "PartialApplyFailure",
    "PlanError",
    "ProviderError",
    "ProvisionerError",
    "ProvisionerTimeoutError",
    "RateLimitedError",
    "SSHConnectionError",
    "SchemaError",
    "StratactlError",
    "TransferError",
    "UnresolvedReferenceError",
]
