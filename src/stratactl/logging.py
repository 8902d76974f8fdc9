"""Structured operation logging for stratactl.

Every CLI command that touches state opens an :class:`OperationScope` via
:meth:`StructuredLogger.operation`. When the scope closes, a single JSON line
describing the command, its arguments, the steps it performed and its result
is appended to ``operations.jsonl`` in the configured logs directory.

Logging must never break a command: if the directory or file cannot be
written the logger disables itself and later scopes become no-ops. Engine
modules log through the standard :mod:`logging` hierarchy instead;
:func:`configure_console_logging` routes those records to the terminal.
"""
from __future__ import annotations

import getpass
import json
import logging
import os
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

OPERATIONS_LOG_NAME = "operations.jsonl"

LOGGER = logging.getLogger(__name__)


def _sanitise(value: object) -> object:
    """Return *value* converted to JSON-safe primitives."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


def _as_list(values: Iterable[object] | None) -> list[object] | None:
    if values is None:
        return None
    return [_sanitise(item) for item in values]


class OperationScope:
    """Collects steps and the outcome for one logged command."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Start timing a new operation."""
        self.op_id = uuid.uuid4().hex
        self.command = command
        self.args = _sanitise(dict(args or {}))
        self.target = _sanitise(dict(target)) if target is not None else None
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self.rc = 0
        self.lock_wait_ms: int | None = None
        self._started = time.perf_counter()
        self._timestamp = datetime.now(timezone.utc).isoformat()

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _sanitise(detail)
        self.steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the command waited for the state lock."""
        self.lock_wait_ms = int(wait_ms)

    def _finish(
        self,
        status: str,
        message: str,
        *,
        changed: int | None,
        warnings: Iterable[object] | None,
        errors: Iterable[object] | None,
        context: Mapping[str, object] | None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message}
        if changed is not None:
            result["changed"] = changed
        warning_list = _as_list(warnings)
        if warning_list:
            result["warnings"] = warning_list
        error_list = _as_list(errors)
        if error_list:
            result["errors"] = error_list
        if context:
            result["context"] = _sanitise(dict(context))
        self.result = result

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        warnings: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self.rc = 0
        self._finish(
            "success", message, changed=changed, warnings=warnings, errors=None, context=context
        )

    def warning(
        self,
        message: str,
        *,
        changed: int | None = None,
        warnings: Iterable[object] | None = None,
        errors: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self.rc = 0
        self._finish(
            "warning", message, changed=changed, warnings=warnings, errors=errors, context=context
        )

    def error(
        self,
        message: str,
        *,
        rc: int = 1,
        errors: Iterable[object] | None = None,
        warnings: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed with exit code *rc*."""
        self.rc = rc
        self._finish(
            "error",
            message,
            changed=None,
            warnings=warnings,
            errors=errors if errors is not None else [message],
            context=context,
        )

    def to_record(self) -> dict[str, object]:
        """Return the JSON record written for this operation."""
        try:
            user = getpass.getuser()
        except (KeyError, OSError):  # pragma: no cover - depends on host setup
            user = str(os.getuid()) if hasattr(os, "getuid") else "unknown"
        record: dict[str, object] = {
            "op_id": self.op_id,
            "ts": self._timestamp,
            "user": user,
            "command": self.command,
            "args": self.args,
            "target": self.target,
            "steps": list(self.steps),
            "result": self.result or {"status": "unknown", "message": "no result recorded"},
            "rc": self.rc,
            "duration_ms": int((time.perf_counter() - self._started) * 1000),
        }
        if self.lock_wait_ms is not None:
            record["lock_wait_ms"] = self.lock_wait_ms
        return record


class StructuredLogger:
    """Append operation records to ``operations.jsonl``."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare *logs_dir*, disabling the logger when it is unusable."""
        self._logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self._logs_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Structured logging disabled: cannot create %s (%s)", self._logs_dir, exc)
            self._enabled = False

    @property
    def enabled(self) -> bool:
        """Return ``True`` while records are being written."""
        return self._enabled

    @property
    def path(self) -> Path:
        """Return the operations log path."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield a scope for *command* and write its record on exit."""
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                rc = getattr(exc, "exit_code", None)
                if rc is None:
                    scope.error(f"{type(exc).__name__}: {exc}", rc=1)
                else:
                    scope.rc = int(rc)
            raise
        finally:
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError as exc:
            LOGGER.warning(
                "Structured logging disabled: cannot write %s (%s)", self._operations_log_path, exc
            )
            self._enabled = False


def configure_console_logging(verbose: bool = False, *, console: Console | None = None) -> None:
    """Send stratactl engine log records to the terminal via Rich."""
    root = logging.getLogger("stratactl")
    for handler in list(root.handlers):
        if getattr(handler, "_stratactl_console", False):
            root.removeHandler(handler)
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        show_time=False,
        markup=False,
    )
    handler._stratactl_console = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)


__all__ = [
    "OPERATIONS_LOG_NAME",
    "OperationScope",
    "StructuredLogger",
    "configure_console_logging",
]
