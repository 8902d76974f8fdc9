"""Failure-mode tests for the structured logging subsystem."""
from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from stratactl.logging import StructuredLogger, configure_console_logging


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    return [json.loads(line) for line in logger.path.read_text(encoding="utf-8").splitlines()]


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger.enabled is False

    with logger.operation("apply", args={"document": "infra.yml"}) as op:
        op.success("done", changed=0)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger.path

    original_open = Path.open

    def fail_once(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_once)

    with logger.operation("apply") as op:
        op.success("done", changed=0)

    assert logger.enabled is False

    # Subsequent operations should not raise even though logger is disabled.
    with logger.operation("destroy") as op:
        op.success("done", changed=0)


def test_operation_record_fields(tmp_path: Path) -> None:
    """Records carry the command, steps, lock wait and sanitised context."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("apply", args={"document": Path("infra.yml")}) as op:
        op.set_lock_wait_ms(12)
        op.add_step("plan", detail={"create": 2})
        op.warning(
            "Applied with warnings",
            changed=2,
            warnings=("permissions",),
            context={"path": Path("/var/lib"), "ids": {"a"}},
        )

    (record,) = _records(logger)
    assert record["command"] == "apply"
    assert record["args"] == {"document": "infra.yml"}
    assert record["lock_wait_ms"] == 12
    assert record["steps"] == [{"name": "plan", "status": "success", "detail": {"create": 2}}]
    assert record["rc"] == 0
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "warning"
    assert result["warnings"] == ["permissions"]
    assert result["context"] == {"path": "/var/lib", "ids": "{'a'}"}


def test_operation_scope_error_defaults_error_list(tmp_path: Path) -> None:
    """Errors should default to the message when not provided."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("plan") as op:
        op.error("boom", rc=2)

    (record,) = _records(logger)
    assert record["rc"] == 2
    assert record["result"] == {"status": "error", "message": "boom", "errors": ["boom"]}


def test_unhandled_exception_is_recorded(tmp_path: Path) -> None:
    """An exception escaping the scope is logged as an error and re-raised."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError):
        with logger.operation("apply"):
            raise ValueError("bad input")

    (record,) = _records(logger)
    assert record["rc"] == 1
    result = record["result"]
    assert isinstance(result, dict)
    assert result["message"] == "ValueError: bad input"


def test_configure_console_logging_replaces_handler() -> None:
    """Repeated configuration keeps a single console handler."""
    configure_console_logging(verbose=True)
    configure_console_logging(verbose=False)

    root = logging.getLogger("stratactl")
    handlers = [h for h in root.handlers if getattr(h, "_stratactl_console", False)]
    assert len(handlers) == 1
    assert root.level == logging.WARNING
