"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    ERROR = 1
    PLAN = 2
    PARTIAL_APPLY = 3
    PROVIDER = 4
