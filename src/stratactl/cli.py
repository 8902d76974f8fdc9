"""Typer-powered command line interface for ``stratactl``.

The CLI is a thin layer over the engine: it loads configuration, parses the
declared document, plans against the recorded state and hands the plan to the
executor. Every command writes one structured record to ``operations.jsonl``.
"""
from __future__ import annotations

import signal
import textwrap
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from types import FrameType
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .errors import PlanError
from .executor import (
    ApplyReport,
    Executor,
    ExecutorOptions,
    OperationStatus,
    ProvisionerOptions,
)
from .exit_codes import ExitCode
from .graph import DependencyGraph, build
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger, configure_console_logging
from .planner import Action, Plan, plan
from .providers import CloudAPI, MemoryCloudAPI, OpenSSHClient, SSHClient
from .resources import load_document, parse
from .state import FileStateStore, StateStore, StateStoreError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to stratactl's YAML config file.",
)
DOCUMENT_ARGUMENT = typer.Argument(
    ...,
    dir_okay=False,
    help="YAML document declaring the desired resources.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of tables.",
)

_STATUS_STYLE: Mapping[OperationStatus, str] = {
    OperationStatus.SUCCEEDED: "[green]succeeded[/green]",
    OperationStatus.UNCHANGED: "[dim]unchanged[/dim]",
    OperationStatus.FAILED: "[red]failed[/red]",
    OperationStatus.BLOCKED: "[yellow]blocked[/yellow]",
    OperationStatus.CANCELLED: "[yellow]cancelled[/yellow]",
}

_ACTION_STYLE: Mapping[Action, str] = {
    Action.CREATE: "green",
    Action.UPDATE: "yellow",
    Action.DELETE: "red",
    Action.NOOP: "dim",
    Action.PROVISION: "cyan",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Declarative infrastructure provisioning.

        Describe networks, subnets, gateways, security groups, key pairs and
        instances in a YAML document; stratactl plans the changes needed to
        reach that state and applies them with bounded concurrency.
        """
    ).strip(),
)
state_app = typer.Typer(help="Inspect recorded resource state.")
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(state_app, name="state")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    state: StateStore
    cloud: CloudAPI
    locks: LockManager
    logger: StructuredLogger
    ssh_client: SSHClient | None = None


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.PLAN) from exc

    state = FileStateStore(config.state_dir)
    cloud = MemoryCloudAPI(config.provider_state_file)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    runtime = RuntimeContext(
        config=config,
        state=state,
        cloud=cloud,
        locks=locks,
        logger=logger,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the stratactl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override state lock acquisition timeout in seconds.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show engine log messages while commands run.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    configure_console_logging(verbose)
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"stratactl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.PLAN,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _load_graph(document: Path, op: OperationScope) -> DependencyGraph:
    try:
        resources = parse(load_document(document))
        graph = build(resources)
    except PlanError as exc:
        _command_error(op, str(exc), rc=ExitCode.PLAN)
    op.add_step("document.parse", detail={"resources": len(graph)})
    return graph


def _build_executor(runtime: RuntimeContext) -> Executor:
    config = runtime.config
    options = ExecutorOptions(
        max_concurrency=config.executor.max_concurrency,
        retry_attempts=config.executor.retry_attempts,
        retry_base_delay=config.executor.retry_base_delay,
        retry_multiplier=config.executor.retry_multiplier,
        retry_max_delay=config.executor.retry_max_delay,
        failure_policy=config.provisioner.failure_policy,  # type: ignore[arg-type]
    )
    provisioner_options = ProvisionerOptions(
        max_attempts=config.provisioner.max_attempts,
        base_delay=config.provisioner.base_delay,
        max_delay=config.provisioner.max_delay,
    )
    ssh_client = runtime.ssh_client or OpenSSHClient(
        ssh_bin=config.provisioner.ssh_bin,
        scp_bin=config.provisioner.scp_bin,
        connect_timeout=config.provisioner.connect_timeout,
        known_hosts_file=config.state_dir / "known_hosts",
    )
    return Executor(
        runtime.cloud,
        runtime.state,
        options=options,
        provisioner_options=provisioner_options,
        ssh_client=ssh_client,
    )


@contextmanager
def _cancel_on_interrupt(executor: Executor) -> Iterator[None]:
    """Translate Ctrl-C into a graceful executor cancellation."""

    def handler(signum: int, frame: FrameType | None) -> None:
        console.print("[yellow]Interrupt received; finishing in-flight operations.[/yellow]")
        executor.cancel()

    try:
        previous = signal.signal(signal.SIGINT, handler)
    except ValueError:  # not running in the main thread
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _render_plan(the_plan: Plan) -> None:
    if the_plan.is_empty:
        console.print("No changes. Infrastructure matches the configuration.")
        return
    for operation in the_plan.changes:
        style = _ACTION_STYLE[operation.action]
        label = f"{operation.action.symbol} {operation.action.value} {operation.address}"
        detail = f" ({operation.reason})" if operation.reason else ""
        console.print(f"[{style}]{label}[/{style}]{detail}")
        if operation.action in (Action.CREATE, Action.UPDATE):
            shown = operation.changed if operation.action is Action.UPDATE else operation.inputs
            for name in sorted(shown):
                value = operation.inputs.get(name)
                console.print(f"    {name} = {value!r}", markup=False, highlight=False)
    totals = the_plan.summary()
    console.print(
        f"Plan: {totals['create']} to create, {totals['update']} to update, "
        f"{totals['delete']} to delete, {totals['provision']} to provision."
    )


def _render_report(report: ApplyReport) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Operation", style="bold")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Details")
    for result in report.results:
        if result.action is Action.NOOP:
            continue
        notes = [result.error] if result.error else []
        notes.extend(result.warnings)
        table.add_row(
            result.key,
            _STATUS_STYLE[result.status],
            str(result.attempts),
            "\n".join(note for note in notes if note),
        )
    console.print(table)
    totals = report.summary.totals
    console.print(
        "Apply summary: "
        + ", ".join(f"{status.value}={totals.get(status, 0)}" for status in OperationStatus)
        + f" (exit={report.summary.exit_code})"
    )


def _finish_apply(op: OperationScope, report: ApplyReport, *, json_output: bool) -> None:
    if json_output:
        console.print_json(data=report.to_dict())
    else:
        _render_report(report)

    summary = report.summary
    changed = summary.totals.get(OperationStatus.SUCCEEDED, 0)
    warnings = [w for result in report.results for w in result.warnings]
    context = {"report": report.to_dict()}
    if summary.ok:
        if warnings:
            op.warning("Apply completed with warnings.", changed=changed, warnings=warnings, context=context)
        else:
            op.success("Apply completed.", changed=changed, context=context)
        return

    failures = [f"{result.key}: {result.error}" for result in report.results if result.is_failure]
    message = "Fatal provider error; apply stopped." if summary.fatal else "Apply finished with failures."
    if not json_output:
        console.print(f"[red]{message}[/red]")
    op.error(message, rc=summary.exit_code, errors=failures, warnings=warnings or None, context=context)
    raise typer.Exit(code=summary.exit_code)


def _execute(
    runtime: RuntimeContext,
    op: OperationScope,
    graph: DependencyGraph | None,
    *,
    destroy: bool,
    json_output: bool,
) -> None:
    try:
        with runtime.locks.state_lock() as handle:
            op.set_lock_wait_ms(handle.wait_ms)
            try:
                the_plan = plan(graph, runtime.state.load(), destroy=destroy)
            except PlanError as exc:
                _command_error(op, str(exc), rc=ExitCode.PLAN)
            op.add_step("plan", detail=the_plan.summary())

            if the_plan.is_empty:
                if json_output:
                    console.print_json(data={"plan": the_plan.to_dict(), "report": None})
                else:
                    _render_plan(the_plan)
                op.success("Nothing to do.", changed=0)
                return
            if not json_output:
                _render_plan(the_plan)

            executor = _build_executor(runtime)
            with _cancel_on_interrupt(executor):
                report = executor.apply(the_plan)
            op.add_step(
                "execute",
                status="success" if report.summary.ok else "error",
                detail={"exit_code": report.summary.exit_code},
            )
    except LockTimeoutError as exc:
        _command_error(op, str(exc), rc=ExitCode.ERROR)
    except StateStoreError as exc:
        _command_error(op, f"State store error: {exc}", rc=ExitCode.ERROR)

    _finish_apply(op, report, json_output=json_output)


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------
@app.command()
def validate(
    ctx: typer.Context,
    document: Path = DOCUMENT_ARGUMENT,
) -> None:
    """Check a document for schema, reference and cycle errors."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "validate",
        args={"document": str(document)},
        target={"kind": "document", "path": str(document)},
    ) as op:
        graph = _load_graph(document, op)
        console.print(f"[green]Configuration is valid[/green]: {len(graph)} resource(s).")
        op.success("Configuration is valid.", changed=0, context={"resources": len(graph)})


@app.command("plan")
def plan_command(
    ctx: typer.Context,
    document: Path = DOCUMENT_ARGUMENT,
    destroy: bool = typer.Option(
        False,
        "--destroy",
        help="Plan the deletion of every recorded resource instead.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the operations needed to converge recorded state to the document."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "plan",
        args={"document": str(document), "destroy": destroy, "json": json_output},
        target={"kind": "document", "path": str(document)},
    ) as op:
        graph = None if destroy else _load_graph(document, op)
        try:
            the_plan = plan(graph, runtime.state.load(), destroy=destroy)
        except PlanError as exc:
            _command_error(op, str(exc), rc=ExitCode.PLAN)
        except StateStoreError as exc:
            _command_error(op, f"State store error: {exc}", rc=ExitCode.ERROR)

        if json_output:
            console.print_json(data=the_plan.to_dict())
        else:
            _render_plan(the_plan)
        op.success("Plan computed.", changed=0, context={"summary": the_plan.summary()})


@app.command()
def apply(
    ctx: typer.Context,
    document: Path = DOCUMENT_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Plan and apply the document against the provider."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "apply",
        args={"document": str(document), "json": json_output},
        target={"kind": "document", "path": str(document)},
    ) as op:
        graph = _load_graph(document, op)
        _execute(runtime, op, graph, destroy=False, json_output=json_output)


@app.command()
def destroy(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Delete every resource recorded in state, dependents first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "destroy",
        args={"json": json_output},
        target={"kind": "state", "path": str(runtime.config.state_dir)},
    ) as op:
        _execute(runtime, op, None, destroy=True, json_output=json_output)


@state_app.command("list")
def state_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List resources recorded in state."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "state list",
        args={"json": json_output},
        target={"kind": "state", "path": str(runtime.config.state_dir)},
    ) as op:
        try:
            observed = runtime.state.load()
        except StateStoreError as exc:
            _command_error(op, f"State store error: {exc}", rc=ExitCode.ERROR)

        if json_output:
            console.print_json(
                data={
                    "serial": observed.serial,
                    "resources": [entry.to_dict() for entry in observed],
                }
            )
            op.success("Listed state as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Address", style="bold")
        table.add_column("ID")
        table.add_column("Flags")
        if not len(observed):
            table.add_row("(none)", "", "")
        for entry in observed:
            flags = []
            if entry.tainted:
                flags.append("tainted")
            if entry.provisioned is False:
                flags.append("unprovisioned")
            table.add_row(entry.address, entry.id, ", ".join(flags))
        console.print(table)
        console.print(f"Serial: {observed.serial}")
        op.success("Listed state.", changed=0, context={"resources": len(observed)})


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            table.add_row(key, str(value))
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()
