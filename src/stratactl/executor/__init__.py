"""Plan execution: worker pool, provider handlers and the file provisioner."""

from __future__ import annotations

from .backoff import ExponentialBackoff
from .engine import Executor
from .handlers import HandlerResult, build_handlers
from .models import (
    FAILURE_POLICIES,
    ApplyReport,
    ApplySummary,
    ExecutorOptions,
    FailurePolicy,
    OperationResult,
    OperationStatus,
    aggregate_results,
    build_report,
)
from .provisioner import FileTransfer, Provisioner, ProvisionerOptions

__all__ = [
    "ApplyReport",
    "ApplySummary",
    "Executor",
    "ExecutorOptions",
    "ExponentialBackoff",
    "FAILURE_POLICIES",
    "FailurePolicy",
    "FileTransfer",
    "HandlerResult",
    "OperationResult",
    "OperationStatus",
    "Provisioner",
    "ProvisionerOptions",
    "aggregate_results",
    "build_handlers",
    "build_report",
]
