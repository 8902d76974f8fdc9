"""Result and report models for apply cycles."""
from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from ..errors import PartialApplyFailure
from ..exit_codes import ExitCode
from ..planner import Action

FailurePolicy = Literal["taint", "keep", "destroy"]
FAILURE_POLICIES: tuple[FailurePolicy, ...] = ("taint", "keep", "destroy")


class OperationStatus(str, Enum):
    """Outcome of a single operation."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    BLOCKED = "blocked"
    UNCHANGED = "unchanged"
    CANCELLED = "cancelled"

    @property
    def is_ok(self) -> bool:
        """Return ``True`` when dependents may proceed."""
        return self in (OperationStatus.SUCCEEDED, OperationStatus.UNCHANGED)


@dataclass(slots=True, frozen=True)
class ExecutorOptions:
    """Runtime tunables for executing a plan."""

    max_concurrency: int = 10
    retry_attempts: int = 5
    retry_base_delay: float = 0.5
    retry_multiplier: float = 2.0
    retry_max_delay: float = 30.0
    failure_policy: FailurePolicy = "taint"

    def __post_init__(self) -> None:
        """Validate the tunables."""
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        if self.retry_attempts < 2:
            raise ValueError("retry_attempts must be >= 2")


@dataclass(slots=True, frozen=True)
class OperationResult:
    """Outcome of running one operation."""

    key: str
    action: Action
    address: str
    status: OperationStatus
    error: str | None = None
    error_type: str | None = None
    warnings: Sequence[str] = field(default_factory=tuple)
    duration_ms: int | None = None
    attempts: int = 0

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the operation did not complete."""
        return not self.status.is_ok

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        payload: dict[str, object] = {
            "key": self.key,
            "action": self.action.value,
            "address": self.address,
            "status": self.status.value,
            "attempts": self.attempts,
            "duration_ms": self.duration_ms,
        }
        if self.error is not None:
            payload["error"] = self.error
            payload["error_type"] = self.error_type
        if self.warnings:
            payload["warnings"] = list(self.warnings)
        return payload


@dataclass(slots=True, frozen=True)
class ApplySummary:
    """Aggregated counts derived from operation results."""

    totals: Mapping[OperationStatus, int]
    exit_code: int
    fatal: bool = False

    @property
    def ok(self) -> bool:
        """Return ``True`` when every operation succeeded or was unchanged."""
        return self.exit_code == ExitCode.OK


@dataclass(slots=True, frozen=True)
class ApplyReport:
    """Complete report for an apply cycle."""

    results: Sequence[OperationResult]
    summary: ApplySummary
    metadata: Mapping[str, Any] | None = None

    def result_for(self, key: str) -> OperationResult:
        """Return the result recorded for operation *key*."""
        for result in self.results:
            if result.key == key:
                return result
        raise KeyError(key)

    def resource_status(self, address: str) -> OperationStatus:
        """Return the outcome for the resource at *address*, ignoring provisioning.

        A replaced resource has two operations; the worse outcome wins.
        """
        statuses = [
            result.status
            for result in self.results
            if result.address == address and result.action is not Action.PROVISION
        ]
        if not statuses:
            raise KeyError(address)
        return max(statuses, key=lambda status: STATUS_ORDER[status])

    def raise_for_status(self) -> None:
        """Raise :class:`PartialApplyFailure` unless every operation completed."""
        if not self.summary.ok:
            raise PartialApplyFailure(self)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "summary": {
                "exit_code": self.summary.exit_code,
                "fatal": self.summary.fatal,
                "totals": {status.value: count for status, count in self.summary.totals.items()},
            },
            "results": [result.to_dict() for result in self.results],
            "metadata": dict(self.metadata or {}),
        }


STATUS_ORDER: Mapping[OperationStatus, int] = {
    OperationStatus.UNCHANGED: 0,
    OperationStatus.SUCCEEDED: 1,
    OperationStatus.CANCELLED: 2,
    OperationStatus.BLOCKED: 3,
    OperationStatus.FAILED: 4,
}


def aggregate_results(results: Iterable[OperationResult], *, fatal: bool = False) -> ApplySummary:
    """Count results per status and derive the exit code."""
    totals: dict[OperationStatus, int] = {status: 0 for status in OperationStatus}
    for result in results:
        totals[result.status] += 1
    failed = any(count for status, count in totals.items() if not status.is_ok)
    if fatal:
        exit_code = int(ExitCode.PROVIDER)
    elif failed:
        exit_code = int(ExitCode.PARTIAL_APPLY)
    else:
        exit_code = int(ExitCode.OK)
    return ApplySummary(totals=totals, exit_code=exit_code, fatal=fatal)


def build_report(
    results: Sequence[OperationResult],
    *,
    fatal: bool = False,
    metadata: Mapping[str, Any] | None = None,
) -> ApplyReport:
    """Create a full :class:`ApplyReport` from operation results."""
    summary = aggregate_results(results, fatal=fatal)
    return ApplyReport(results=tuple(results), summary=summary, metadata=metadata)


__all__ = [
    "ApplyReport",
    "ApplySummary",
    "ExecutorOptions",
    "FAILURE_POLICIES",
    "FailurePolicy",
    "OperationResult",
    "OperationStatus",
    "STATUS_ORDER",
    "aggregate_results",
    "build_report",
]
