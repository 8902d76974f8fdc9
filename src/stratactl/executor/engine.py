"""Plan execution harness.

The dispatch loop runs in the calling thread. It hands ready operations to a
bounded :class:`concurrent.futures.ThreadPoolExecutor`, waits for any of them
to finish, records the outcome in the state store and dispatches whatever
became ready. Worker threads only talk to the provider, the local sink and
the SSH client; all state writes happen in the dispatch loop.

An operation is dispatched once every operation it depends on succeeded (or
was a no-op). When one fails, its transitive dependents are ``blocked`` and
unrelated branches keep going. A :class:`~stratactl.errors.FatalProviderError`
or a set cancellation event stops further dispatch; in-flight operations run
to completion and everything not yet started is ``cancelled``.
"""
from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
import traceback
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar

from ..credentials import Credential, CredentialVault, load_credential
from ..errors import (
    FatalProviderError,
    NotFoundError,
    ProviderError,
    ProvisionerError,
    ProvisionerTimeoutError,
    StratactlError,
    UnresolvedReferenceError,
)
from ..planner import Action, Operation, Plan, Unknown, op_key
from ..providers.base import CloudAPI, CloudResourceAdapter
from ..providers.local import LocalFileSink
from ..providers.ssh import OpenSSHClient, SSHClient
from ..resources import Reference, ResourceDescriptor, ResourceKind, schema_for
from ..state import StateEntry, StateStore, StateStoreError
from .backoff import ExponentialBackoff
from .handlers import HandlerResult, ResourceHandler, build_handlers
from .models import (
    ApplyReport,
    ExecutorOptions,
    OperationResult,
    OperationStatus,
    build_report,
)
from .provisioner import FileTransfer, Provisioner, ProvisionerOptions

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
Key = tuple[ResourceKind, str]


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


@dataclass
class _Outcome:
    """What a worker thread reports back to the dispatch loop."""

    status: OperationStatus
    result: HandlerResult | None = None
    error: BaseException | None = None
    warnings: list[str] = field(default_factory=list)
    attempts: int = 0
    duration_ms: int = 0
    destroyed: bool = False


@dataclass
class _Task:
    """A dispatched operation together with its resolved inputs."""

    op: Operation
    resource_id: str | None = None
    inputs: Mapping[str, Any] = field(default_factory=dict)
    transfers: tuple[FileTransfer, ...] = ()
    attempts: int = 0
    skip: str | None = None

    def require_id(self) -> str:
        """Return the provider id the operation acts on."""
        if self.resource_id is None:
            raise StratactlError(f"{self.op.key} has no provider id to act on.")
        return self.resource_id


def _materialize(value: object, lookup: Callable[[Reference], object]) -> object:
    if isinstance(value, Unknown):
        return lookup(value.reference)
    if isinstance(value, Reference):
        return lookup(value)
    if isinstance(value, Mapping):
        return {key: _materialize(item, lookup) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_materialize(item, lookup) for item in value]
    return value


def _state_dependencies(resource: ResourceDescriptor) -> tuple[str, ...]:
    return tuple(sorted({reference.address for reference in resource.references()}))


class Executor:
    """Apply a :class:`~stratactl.planner.Plan` against a provider."""

    def __init__(
        self,
        cloud: CloudAPI,
        state: StateStore,
        *,
        options: ExecutorOptions | None = None,
        provisioner_options: ProvisionerOptions | None = None,
        ssh_client: SSHClient | None = None,
        sink: LocalFileSink | None = None,
        vault: CredentialVault | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Wire the executor to its collaborators."""
        self._state = state
        self._options = options or ExecutorOptions()
        self._sleep = sleep
        self._adapter = CloudResourceAdapter(cloud)
        self._vault = vault or CredentialVault()
        self._handlers: dict[ResourceKind, ResourceHandler] = build_handlers(
            self._adapter, sink or LocalFileSink(), self._vault
        )
        self._provisioner = Provisioner(
            ssh_client or OpenSSHClient(), provisioner_options, sleep=sleep
        )
        self.cancel_event = threading.Event()
        self._entries: dict[Key, StateEntry] = {}
        self._outputs: dict[Key, dict[str, Any]] = {}

    @property
    def options(self) -> ExecutorOptions:
        """Return the execution options associated with this executor."""
        return self._options

    @property
    def vault(self) -> CredentialVault:
        """Return the credential vault used for this executor's apply cycles."""
        return self._vault

    def cancel(self) -> None:
        """Stop dispatching new operations; in-flight ones finish."""
        self.cancel_event.set()

    # ------------------------------------------------------------------
    # Dispatch loop
    # ------------------------------------------------------------------
    def apply(self, plan: Plan) -> ApplyReport:
        """Execute *plan* and return one result per operation."""
        start = time.perf_counter()
        observed = self._state.load()
        self._entries = dict(observed.entries)
        self._outputs = {entry.key: {**entry.outputs, "id": entry.id} for entry in observed}

        operations = list(plan)
        results: dict[str, OperationResult] = {}
        pending: dict[str, Operation] = {op.key: op for op in operations}
        fatal = False
        stopped = False
        max_workers = max(1, self._options.max_concurrency)

        with concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="stratactl-apply"
        ) as pool:
            running: dict[concurrent.futures.Future[_Outcome], _Task] = {}
            while True:
                if not stopped and self.cancel_event.is_set():
                    LOGGER.warning("Apply cancelled; no further operations will start.")
                    stopped = True
                for op in list(pending.values()):
                    if len(running) >= max_workers:
                        break
                    waiting = [key for key in op.depends_on if key not in results]
                    if waiting:
                        continue
                    failed = [key for key in op.depends_on if not results[key].status.is_ok]
                    if failed:
                        del pending[op.key]
                        results[op.key] = self._blocked(op, failed)
                        continue
                    if stopped:
                        continue
                    del pending[op.key]
                    if op.action is Action.NOOP:
                        results[op.key] = OperationResult(
                            key=op.key,
                            action=op.action,
                            address=op.address,
                            status=OperationStatus.UNCHANGED,
                            duration_ms=0,
                        )
                        continue
                    try:
                        task = self._prepare(op)
                    except (StratactlError, OSError) as exc:
                        results[op.key] = self._failed(op, exc)
                        continue
                    LOGGER.info("Starting %s (%s)", op.key, op.reason or op.action.value)
                    running[pool.submit(self._run, task)] = task

                if not running:
                    break
                done, _ = concurrent.futures.wait(
                    running, return_when=concurrent.futures.FIRST_COMPLETED
                )
                for future in done:
                    task = running.pop(future)
                    outcome = future.result()
                    results[task.op.key] = self._commit(task, outcome)
                    if isinstance(outcome.error, FatalProviderError) and not fatal:
                        LOGGER.error("Fatal provider error; stopping dispatch: %s", outcome.error)
                        fatal = True
                        stopped = True

        for op in pending.values():
            results[op.key] = OperationResult(
                key=op.key,
                action=op.action,
                address=op.address,
                status=OperationStatus.CANCELLED,
                error="fatal provider error" if fatal else "apply cancelled",
            )

        ordered = [results[op.key] for op in operations]
        metadata: dict[str, object] = {
            "duration_ms": _duration_ms(start),
            "operation_count": len(operations),
            "concurrency": max_workers,
            "cancelled": self.cancel_event.is_set(),
        }
        report = build_report(ordered, fatal=fatal, metadata=metadata)
        LOGGER.info(
            "Apply finished (exit code %d): %s",
            report.summary.exit_code,
            {status.value: count for status, count in report.summary.totals.items() if count},
        )
        return report

    def _blocked(self, op: Operation, failed: Iterable[str]) -> OperationResult:
        causes = ", ".join(failed)
        LOGGER.info("Blocked %s by %s", op.key, causes)
        return OperationResult(
            key=op.key,
            action=op.action,
            address=op.address,
            status=OperationStatus.BLOCKED,
            error=f"blocked by {causes}",
        )

    def _failed(self, op: Operation, exc: BaseException, attempts: int = 0) -> OperationResult:
        LOGGER.error("%s failed: %s", op.key, exc)
        return OperationResult(
            key=op.key,
            action=op.action,
            address=op.address,
            status=OperationStatus.FAILED,
            error=str(exc),
            error_type=type(exc).__name__,
            attempts=attempts,
        )

    # ------------------------------------------------------------------
    # Input resolution (dispatch thread)
    # ------------------------------------------------------------------
    def _lookup(self, source: str) -> Callable[[Reference], object]:
        def lookup(reference: Reference) -> object:
            outputs = self._outputs.get(reference.key)
            if reference.output in schema_for(reference.kind).sensitive_outputs:
                raise UnresolvedReferenceError(
                    source, reference.symbol(), "secret outputs only feed provisioner connections"
                )
            if outputs is None or reference.output not in outputs:
                raise UnresolvedReferenceError(
                    source, reference.symbol(), "value is not available after apply"
                )
            return outputs[reference.output]

        return lookup

    def _credential(self, source: str, value: object) -> Credential:
        if isinstance(value, Reference):
            if value.output in schema_for(value.kind).sensitive_outputs:
                outputs = self._outputs.get(value.key) or {}
                return self._vault.get(
                    value.address, private_path=outputs.get("private_key_path")
                )
            value = self._lookup(source)(value)
        if not isinstance(value, str) or not value:
            raise ProvisionerError(f"{source} has no usable private key for its connection.")
        return load_credential(Path(value))

    def _prepare(self, op: Operation) -> _Task:
        current = self._entries.get(op.target_key)
        if op.action is Action.DELETE:
            if op.prior is None:
                raise StratactlError(f"{op.address} has no recorded state to delete.")
            task = _Task(op=op, resource_id=op.prior.id)
            created_first = op_key(Action.CREATE, op.address) in op.depends_on
            if created_first and current is not None and current.id == op.prior.id:
                # The successor reuses the old identity; deleting it would
                # remove the object that was just created.
                task.skip = f"{op.address} kept: its replacement reuses id {current.id}"
            return task
        if op.action is Action.PROVISION:
            if current is None:
                raise ProvisionerError(f"{op.address} is not recorded; nothing to provision.")
            return _Task(op=op, resource_id=current.id, transfers=self._transfers(op))

        inputs = _materialize(dict(op.inputs), self._lookup(op.address))
        if not isinstance(inputs, dict):
            raise StratactlError(f"{op.address} inputs did not resolve to a mapping.")
        if op.action is Action.UPDATE:
            entry = current or op.prior
            if entry is None:
                raise StratactlError(f"{op.address} has no recorded state to update.")
            return _Task(op=op, resource_id=entry.id, inputs=inputs)
        return _Task(op=op, inputs=inputs)

    def _transfers(self, op: Operation) -> tuple[FileTransfer, ...]:
        if op.resource is None:
            raise ProvisionerError(f"{op.address} is no longer declared; nothing to provision.")
        lookup = self._lookup(op.address)
        transfers: list[FileTransfer] = []
        for spec in op.resource.provisioners:
            connection = spec.connection
            host = _materialize(connection.host, lookup)
            if not isinstance(host, str) or not host:
                raise ProvisionerError(f"{op.address} has no reachable address to provision.")
            transfers.append(
                FileTransfer(
                    host=host,
                    port=int(connection.port),
                    user=connection.user,
                    credential=self._credential(op.address, connection.private_key),
                    source=Path(spec.source).expanduser(),
                    destination=spec.destination,
                )
            )
        return tuple(transfers)

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------
    def _call(self, task: _Task) -> Callable[..., Any]:
        """Return a wrapper that retries rate-limited provider calls."""

        def call(func: Callable[..., T], *args: Any) -> T:
            backoff = ExponentialBackoff(
                initial_interval=self._options.retry_base_delay,
                multiplier=self._options.retry_multiplier,
                max_interval=self._options.retry_max_delay,
            )
            attempt = 0
            while True:
                attempt += 1
                task.attempts += 1
                try:
                    return func(*args)
                except ProviderError as exc:
                    if not exc.retryable or attempt >= self._options.retry_attempts:
                        raise
                    delay = backoff.next_backoff()
                    LOGGER.warning(
                        "%s throttled (attempt %d/%d); retrying in %.2fs",
                        task.op.key,
                        attempt,
                        self._options.retry_attempts,
                        delay,
                    )
                    self._sleep(delay)

        return call

    def _run(self, task: _Task) -> _Outcome:
        start = time.perf_counter()
        op = task.op
        call = self._call(task)
        handler = self._handlers[op.kind]
        outcome = _Outcome(status=OperationStatus.SUCCEEDED)
        try:
            if op.action is Action.CREATE:
                outcome.result = handler.create(op, task.inputs, call)
            elif op.action is Action.UPDATE:
                outcome.result = handler.update(op, task.require_id(), task.inputs, call)
            elif op.action is Action.DELETE and task.skip:
                outcome.warnings.append(task.skip)
            elif op.action is Action.DELETE:
                outcome.warnings.extend(self._delete(op, task.require_id(), handler, call))
            elif op.action is Action.PROVISION:
                task.attempts += self._provisioner.run(task.transfers)
        except ProvisionerTimeoutError as exc:
            task.attempts += exc.attempts
            outcome.status = OperationStatus.FAILED
            outcome.error = exc
            self._on_provision_failure(task, outcome, call)
        except ProvisionerError as exc:
            outcome.status = OperationStatus.FAILED
            outcome.error = exc
            if op.action is Action.PROVISION:
                self._on_provision_failure(task, outcome, call)
        except (StratactlError, OSError, ValueError) as exc:
            outcome.status = OperationStatus.FAILED
            outcome.error = exc
        except Exception as exc:  # pragma: no cover - defensive catch
            LOGGER.error("%s raised an unexpected error:\n%s", op.key, traceback.format_exc())
            outcome.status = OperationStatus.FAILED
            outcome.error = exc
        if outcome.result is not None:
            outcome.warnings.extend(outcome.result.warnings)
        outcome.attempts = task.attempts
        outcome.duration_ms = _duration_ms(start)
        return outcome

    def _delete(
        self,
        op: Operation,
        resource_id: str,
        handler: ResourceHandler,
        call: Callable[..., Any],
    ) -> list[str]:
        try:
            return handler.delete(op, resource_id, call)
        except NotFoundError:
            LOGGER.info("%s was already gone at the provider.", op.address)
            return [f"{op.address} ({resource_id}) was already deleted"]

    def _on_provision_failure(
        self, task: _Task, outcome: _Outcome, call: Callable[..., Any]
    ) -> None:
        if self._options.failure_policy != "destroy" or task.resource_id is None:
            return
        op = task.op
        try:
            self._delete(op, task.resource_id, self._handlers[op.kind], call)
        except (StratactlError, OSError) as exc:
            outcome.warnings.append(f"Could not destroy {op.address} after failed provisioning: {exc}")
            return
        LOGGER.warning("Destroyed %s after failed provisioning.", op.address)
        outcome.destroyed = True

    # ------------------------------------------------------------------
    # State commit (dispatch thread)
    # ------------------------------------------------------------------
    def _record(self, entry: StateEntry) -> None:
        self._state.record(entry)
        self._entries[entry.key] = entry
        self._outputs[entry.key] = {**entry.outputs, "id": entry.id}

    def _forget(self, key: Key, resource_id: str) -> None:
        self._state.remove(key[0], key[1], resource_id=resource_id)
        current = self._entries.get(key)
        if current is not None and current.id == resource_id:
            del self._entries[key]
            self._outputs.pop(key, None)

    def _commit(self, task: _Task, outcome: _Outcome) -> OperationResult:
        op = task.op
        if outcome.status is OperationStatus.SUCCEEDED:
            try:
                self._apply_success(task, outcome)
            except (StratactlError, StateStoreError, OSError) as exc:
                return self._failed(op, exc, outcome.attempts)
            LOGGER.info("Finished %s in %d ms", op.key, outcome.duration_ms)
        elif op.action is Action.PROVISION and isinstance(outcome.error, ProvisionerError):
            try:
                self._apply_provision_failure(task, outcome)
            except (StateStoreError, OSError) as exc:
                outcome.warnings.append(f"Could not record provisioning failure: {exc}")

        error = outcome.error
        if error is not None:
            LOGGER.error("%s failed: %s", op.key, error)
        return OperationResult(
            key=op.key,
            action=op.action,
            address=op.address,
            status=outcome.status,
            error=str(error) if error is not None else None,
            error_type=type(error).__name__ if error is not None else None,
            warnings=tuple(outcome.warnings),
            duration_ms=outcome.duration_ms,
            attempts=outcome.attempts,
        )

    def _apply_success(self, task: _Task, outcome: _Outcome) -> None:
        op = task.op
        if op.action is Action.DELETE:
            if not task.skip:
                self._forget(op.target_key, task.require_id())
            return
        current = self._entries.get(op.target_key)
        if op.action is Action.PROVISION:
            if current is not None:
                self._record(current.with_changes(provisioned=True, tainted=False))
            return

        result = outcome.result
        resource = op.resource
        if result is None or resource is None:
            raise StratactlError(f"{op.key} finished without a provider result.")
        if op.action is Action.CREATE:
            entry = StateEntry(
                kind=op.kind,
                name=op.name,
                id=result.id,
                attributes=resource.symbolic_attributes(),
                outputs=dict(result.outputs),
                depends_on=_state_dependencies(resource),
                provisioned=False if resource.provisioners else None,
            )
        else:
            base = current or op.prior
            if base is None:
                raise StratactlError(f"{op.address} has no recorded state to update.")
            entry = base.with_changes(
                id=result.id,
                attributes=resource.symbolic_attributes(),
                outputs={**base.outputs, **result.outputs},
                depends_on=_state_dependencies(resource),
            )
        self._record(entry)

    def _apply_provision_failure(self, task: _Task, outcome: _Outcome) -> None:
        op = task.op
        current = self._entries.get(op.target_key)
        if current is None:
            return
        if outcome.destroyed:
            self._forget(op.target_key, current.id)
            return
        policy = self._options.failure_policy
        taint = policy != "keep"
        self._record(current.with_changes(provisioned=False, tainted=taint))
        if taint:
            outcome.warnings.append(f"{op.address} was tainted and will be replaced on next apply")


__all__ = ["Executor"]
