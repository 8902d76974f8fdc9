"""Diff declared resources against observed state and order the operations.

The planner walks the dependency graph in topological order and decides,
per resource, whether it is created, updated in place, replaced (delete and
create), left alone, or deleted because it is no longer declared. Replacement
taint flows along dependency edges: a dependent whose attribute points at a
replaced resource is either re-pointed in place (when the attribute is
updatable) or replaced itself.

The resulting :class:`Plan` is a list of :class:`Operation` objects in an
order that respects every operation's ``depends_on`` keys.
"""
from __future__ import annotations

import heapq
import logging
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import PlanError
from .graph import DependencyGraph, Key
from .resources import (
    Reference,
    ResourceDescriptor,
    ResourceKind,
    address_of,
    iter_references,
    map_references,
    schema_for,
)
from .state import ObservedState, StateEntry

LOGGER = logging.getLogger(__name__)


class Action(str, Enum):
    """What the executor does with an operation."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "noop"
    PROVISION = "provision"

    @property
    def symbol(self) -> str:
        """Return the marker used when rendering plans."""
        return _ACTION_SYMBOLS[self]


_ACTION_SYMBOLS = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.DELETE: "-",
    Action.NOOP: " ",
    Action.PROVISION: ">",
}


class Unknown:
    """Placeholder for an input only known once a predecessor has applied."""

    __slots__ = ("reference",)

    def __init__(self, reference: Reference) -> None:
        """Remember which reference will supply the value."""
        self.reference = reference

    def __repr__(self) -> str:
        """Render the placeholder the way plans display it."""
        return "(known after apply)"

    def __eq__(self, other: object) -> bool:
        """Compare placeholders by the reference they wait on."""
        return isinstance(other, Unknown) and other.reference == self.reference

    def __hash__(self) -> int:
        """Hash by reference so placeholders can live in sets."""
        return hash(self.reference)


@dataclass(frozen=True)
class Operation:
    """One unit of work for the executor.

    ``inputs`` holds attribute values with references already resolved where
    the target is unchanged; anything still pending is a :class:`Unknown`
    resolved by the executor right before dispatch.
    """

    key: str
    action: Action
    kind: ResourceKind
    name: str
    resource: ResourceDescriptor | None = None
    prior: StateEntry | None = None
    inputs: Mapping[str, Any] = field(default_factory=dict)
    changed: tuple[str, ...] = ()
    depends_on: tuple[str, ...] = ()
    reason: str = ""
    replacement: bool = False

    @property
    def address(self) -> str:
        """Return the ``Kind.name`` address of the target resource."""
        return address_of(self.kind, self.name)

    @property
    def target_key(self) -> Key:
        """Return the ``(kind, name)`` identity of the target resource."""
        return (self.kind, self.name)

    @property
    def is_change(self) -> bool:
        """Return ``True`` for operations that touch the provider."""
        return self.action is not Action.NOOP


@dataclass(frozen=True)
class Plan:
    """Ordered operations needed to converge observed state to declared state."""

    operations: tuple[Operation, ...] = ()
    serial: int = 0

    def __iter__(self) -> Iterator[Operation]:
        """Iterate operations in execution order."""
        return iter(self.operations)

    def __len__(self) -> int:
        """Return the number of operations, no-ops included."""
        return len(self.operations)

    def get(self, key: str) -> Operation:
        """Return the operation stored under *key*."""
        for operation in self.operations:
            if operation.key == key:
                return operation
        raise KeyError(key)

    @property
    def changes(self) -> tuple[Operation, ...]:
        """Return operations that touch the provider."""
        return tuple(op for op in self.operations if op.is_change)

    @property
    def is_empty(self) -> bool:
        """Return ``True`` when every operation is a no-op."""
        return not self.changes

    def summary(self) -> dict[str, int]:
        """Return a count of operations per action."""
        totals = {action.value: 0 for action in Action}
        for operation in self.operations:
            totals[operation.action.value] += 1
        return totals

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "serial": self.serial,
            "summary": self.summary(),
            "operations": [
                {
                    "key": op.key,
                    "action": op.action.value,
                    "address": op.address,
                    "reason": op.reason,
                    "replacement": op.replacement,
                    "changed": list(op.changed),
                    "depends_on": list(op.depends_on),
                    "inputs": {k: _display(v) for k, v in sorted(op.inputs.items())},
                }
                for op in self.operations
            ],
        }


def _display(value: object) -> object:
    if isinstance(value, Unknown):
        return repr(value)
    if isinstance(value, Mapping):
        return {str(key): _display(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_display(item) for item in value]
    return value


def op_key(action: Action, address: str) -> str:
    """Return the plan key for *action* on *address*."""
    return f"{action.value}:{address}"


# ----------------------------------------------------------------------
# Decision phase
# ----------------------------------------------------------------------
_CREATE, _UPDATE, _REPLACE, _NOOP = "create", "update", "replace", "noop"


@dataclass
class _Decision:
    verdict: str
    changed: tuple[str, ...] = ()
    reason: str = ""
    repoints: frozenset[Key] = frozenset()


def _diff(desired: Mapping[str, Any], applied: Mapping[str, Any]) -> list[str]:
    keys = set(desired) | set(applied)
    return sorted(key for key in keys if desired.get(key) != applied.get(key))


def _references_by_attribute(resource: ResourceDescriptor) -> dict[str, set[Key]]:
    result: dict[str, set[Key]] = {}
    for attribute, value in resource.attributes.items():
        keys = {reference.key for reference in iter_references(value)}
        if keys:
            result[attribute] = keys
    return result


def _decide(
    resource: ResourceDescriptor,
    entry: StateEntry | None,
    decisions: Mapping[Key, _Decision],
) -> _Decision:
    if entry is None:
        return _Decision(_CREATE, reason="not in state")
    if not entry.id:
        raise PlanError(f"State entry {entry.address} has no provider id; cannot diff it.")
    if entry.tainted:
        return _Decision(_REPLACE, reason="tainted")

    schema = schema_for(resource.kind)
    changed = set(_diff(resource.symbolic_attributes(), entry.attributes))
    repoints: set[Key] = set()
    for attribute, targets in _references_by_attribute(resource).items():
        replaced = {key for key in targets if decisions[key].verdict in (_CREATE, _REPLACE)}
        if replaced:
            changed.add(attribute)
            repoints |= replaced

    if not changed:
        return _Decision(_NOOP)
    ordered = tuple(sorted(changed))
    if schema.supports_update and changed <= schema.updatable:
        reason = "dependency replaced" if repoints else "attributes changed"
        return _Decision(_UPDATE, ordered, reason, frozenset(repoints))
    forced = sorted(changed - schema.updatable)
    return _Decision(_REPLACE, ordered, f"cannot update {', '.join(forced)} in place")


# ----------------------------------------------------------------------
# Planning
# ----------------------------------------------------------------------
def _resolve_inputs(
    resource: ResourceDescriptor,
    observed: ObservedState,
    decisions: Mapping[Key, _Decision],
) -> dict[str, Any]:
    def resolve(reference: Reference) -> object:
        target = decisions.get(reference.key)
        entry = observed.get(reference.key)
        if entry is None or target is None or target.verdict in (_CREATE, _REPLACE):
            return Unknown(reference)
        if reference.output in schema_for(reference.kind).sensitive_outputs:
            return Unknown(reference)
        if reference.output == "id":
            return entry.id
        if target.verdict == _UPDATE or reference.output not in entry.outputs:
            return Unknown(reference)
        return entry.outputs[reference.output]

    return {
        attribute: map_references(value, resolve)
        for attribute, value in sorted(resource.attributes.items())
    }


def _deletion_order(entries: Sequence[StateEntry]) -> list[StateEntry]:
    """Return *entries* so dependents come before the entries they depend on."""
    by_address = {entry.address: entry for entry in entries}
    blockers: dict[str, int] = {entry.address: 0 for entry in entries}
    dependencies: dict[str, list[str]] = {}
    for entry in entries:
        targets = [address for address in entry.depends_on if address in by_address]
        dependencies[entry.address] = targets
        for address in targets:
            blockers[address] += 1

    position = {entry.address: index for index, entry in enumerate(entries)}
    # Newest entries first among independents mirrors creation order reversed.
    ready = [-position[address] for address, count in blockers.items() if count == 0]
    heapq.heapify(ready)
    addresses = [entry.address for entry in entries]
    ordered: list[StateEntry] = []
    while ready:
        address = addresses[-heapq.heappop(ready)]
        ordered.append(by_address[address])
        for dependency in dependencies[address]:
            blockers[dependency] -= 1
            if blockers[dependency] == 0:
                heapq.heappush(ready, -position[dependency])
    if len(ordered) != len(entries):
        LOGGER.warning("State dependencies contain a cycle; deleting remaining entries as listed.")
        ordered.extend(entry for entry in entries if entry not in ordered)
    return ordered


def _network_path_keys(resource: ResourceDescriptor, graph: DependencyGraph) -> set[Key]:
    """Return resources that must exist before the instance is reachable."""
    keys: set[Key] = set()
    for reference in iter_references(resource.attributes.get("security_groups")):
        keys.add(reference.key)
    subnet = resource.attributes.get("subnet")
    for candidate in graph.nodes():
        if candidate.kind is ResourceKind.ROUTE_TABLE_ASSOCIATION:
            assoc_subnet = candidate.attributes.get("subnet")
            if isinstance(subnet, Reference) and isinstance(assoc_subnet, Reference):
                if assoc_subnet.key == subnet.key:
                    keys.add(candidate.key)
                    route_table = candidate.attributes.get("route_table")
                    if isinstance(route_table, Reference):
                        keys.add(route_table.key)
        elif candidate.kind is ResourceKind.ELASTIC_IP:
            instance = candidate.attributes.get("instance")
            if isinstance(instance, Reference) and instance.key == resource.key:
                keys.add(candidate.key)
    return keys


def _sort_operations(operations: Sequence[Operation]) -> tuple[Operation, ...]:
    position = {op.key: index for index, op in enumerate(operations)}
    remaining = {op.key: 0 for op in operations}
    dependents: dict[str, list[str]] = {op.key: [] for op in operations}
    for op in operations:
        for dependency in op.depends_on:
            if dependency not in position:
                raise PlanError(f"{op.key} depends on unknown operation {dependency}")
            remaining[op.key] += 1
            dependents[dependency].append(op.key)

    by_key = {op.key: op for op in operations}
    ready = [position[key] for key, count in remaining.items() if count == 0]
    heapq.heapify(ready)
    ordered: list[Operation] = []
    while ready:
        op = operations[heapq.heappop(ready)]
        ordered.append(op)
        for dependent in dependents[op.key]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, position[dependent])
    if len(ordered) != len(operations):
        stuck = sorted(key for key, count in remaining.items() if count)
        raise PlanError(f"Operations could not be ordered: {', '.join(stuck)}")
    return tuple(by_key[op.key] for op in ordered)


def plan(
    graph: DependencyGraph | None,
    observed: ObservedState,
    *,
    destroy: bool = False,
) -> Plan:
    """Compute the ordered operations converging *observed* to *graph*.

    With ``destroy=True`` every recorded resource is scheduled for deletion
    and *graph* is ignored.
    """
    resources: list[ResourceDescriptor] = (
        [] if destroy or graph is None else graph.topological_order()
    )
    declared_keys = {resource.key for resource in resources}

    decisions: dict[Key, _Decision] = {}
    for resource in resources:
        decisions[resource.key] = _decide(resource, observed.get(resource.key), decisions)

    orphans = [entry for entry in observed if entry.key not in declared_keys]
    for entry in orphans:
        if not entry.id:
            raise PlanError(f"State entry {entry.address} has no provider id; cannot delete it.")

    # Replacements whose dependents re-point in place create the new object
    # first and delete the old one once nothing points at it any more.
    create_first: set[Key] = set()
    for decision in decisions.values():
        if decision.verdict == _UPDATE:
            create_first |= {key for key in decision.repoints if decisions[key].verdict == _REPLACE}
    # The old object of a create-first replacement keeps pointing at its old
    # dependencies until it is deleted, so those must be created first too.
    for resource in reversed(resources):
        if resource.key not in create_first:
            continue
        if graph is None:
            raise PlanError("Declared resources cannot be planned without a dependency graph.")
        for dependency in graph.dependencies(resource.key):
            if decisions[dependency].verdict == _REPLACE:
                create_first.add(dependency)

    def ready_key(key: Key) -> str | None:
        verdict = decisions[key].verdict
        address = address_of(*key)
        if verdict in (_CREATE, _REPLACE):
            return op_key(Action.CREATE, address)
        if verdict == _UPDATE:
            return op_key(Action.UPDATE, address)
        return None

    # Deletions of old objects wait for everything that still points at them.
    deleted = {entry.address: entry for entry in orphans}
    for resource in resources:
        if decisions[resource.key].verdict == _REPLACE:
            prior = observed.get(resource.key)
            if prior is None:
                raise PlanError(
                    f"{resource.address} is marked for replacement but has no recorded state."
                )
            deleted[resource.address] = prior
    delete_waits: dict[str, set[str]] = {address: set() for address in deleted}
    for entry in observed:
        for address in entry.depends_on:
            if address not in delete_waits or address == entry.address:
                continue
            if entry.address in deleted:
                delete_waits[address].add(op_key(Action.DELETE, entry.address))
                continue
            decision = decisions.get(entry.key)
            if decision is None or decision.verdict != _UPDATE:
                continue
            target = deleted[address].key
            still_linked = graph is not None and target in graph.dependencies(entry.key)
            # An update that keeps the link (a depends_on hint) runs after the
            # new object exists, so it must not hold back the old one's delete.
            if target in decision.repoints or not still_linked:
                delete_waits[address].add(op_key(Action.UPDATE, entry.address))

    operations: list[Operation] = []

    for entry in _deletion_order(orphans):
        operations.append(
            Operation(
                key=op_key(Action.DELETE, entry.address),
                action=Action.DELETE,
                kind=entry.kind,
                name=entry.name,
                prior=entry,
                depends_on=tuple(sorted(delete_waits[entry.address])),
                reason="destroy requested" if destroy else "no longer declared",
            )
        )

    for resource in resources:
        if graph is None:
            raise PlanError("Declared resources cannot be planned without a dependency graph.")
        decision = decisions[resource.key]
        prior = observed.get(resource.key)
        predecessors = sorted(
            key
            for key in (ready_key(dep) for dep in graph.dependencies(resource.key))
            if key is not None
        )
        inputs = _resolve_inputs(resource, observed, decisions)
        create_key = op_key(Action.CREATE, resource.address)
        delete_key = op_key(Action.DELETE, resource.address)

        if decision.verdict == _NOOP:
            operations.append(
                Operation(
                    key=op_key(Action.NOOP, resource.address),
                    action=Action.NOOP,
                    kind=resource.kind,
                    name=resource.name,
                    resource=resource,
                    prior=prior,
                    inputs=inputs,
                    reason="up to date",
                )
            )
        elif decision.verdict == _UPDATE:
            operations.append(
                Operation(
                    key=op_key(Action.UPDATE, resource.address),
                    action=Action.UPDATE,
                    kind=resource.kind,
                    name=resource.name,
                    resource=resource,
                    prior=prior,
                    inputs=inputs,
                    changed=decision.changed,
                    depends_on=tuple(predecessors),
                    reason=decision.reason,
                )
            )
        elif decision.verdict == _CREATE:
            operations.append(
                Operation(
                    key=create_key,
                    action=Action.CREATE,
                    kind=resource.kind,
                    name=resource.name,
                    resource=resource,
                    inputs=inputs,
                    depends_on=tuple(predecessors),
                    reason=decision.reason,
                )
            )
        else:
            waits = set(delete_waits[resource.address])
            create_deps = set(predecessors)
            if resource.key in create_first:
                waits.add(create_key)
            else:
                create_deps.add(delete_key)
            operations.append(
                Operation(
                    key=delete_key,
                    action=Action.DELETE,
                    kind=resource.kind,
                    name=resource.name,
                    resource=resource,
                    prior=prior,
                    depends_on=tuple(sorted(waits)),
                    reason=decision.reason,
                    replacement=True,
                )
            )
            operations.append(
                Operation(
                    key=create_key,
                    action=Action.CREATE,
                    kind=resource.kind,
                    name=resource.name,
                    resource=resource,
                    inputs=inputs,
                    changed=decision.changed,
                    depends_on=tuple(sorted(create_deps)),
                    reason=decision.reason,
                    replacement=True,
                )
            )

        if resource.provisioners:
            needs_provision = decision.verdict in (_CREATE, _REPLACE) or (
                prior is not None and prior.provisioned is False
            )
            if needs_provision:
                operations.append(
                    _provision_operation(resource, graph, decision, ready_key, prior)
                )

    ordered = _sort_operations(operations)
    LOGGER.debug("Planned %d operation(s): %s", len(ordered), [op.key for op in ordered])
    return Plan(operations=ordered, serial=observed.serial)


def _provision_operation(
    resource: ResourceDescriptor,
    graph: DependencyGraph,
    decision: _Decision,
    ready_key: Callable[[Key], str | None],
    prior: StateEntry | None,
) -> Operation:
    prerequisites: set[Key] = {resource.key}
    prerequisites |= {reference.key for reference in resource.provisioner_references()}
    prerequisites |= _network_path_keys(resource, graph)
    waits = {key for key in (ready_key(item) for item in prerequisites) if key is not None}
    reason = "new instance" if decision.verdict in (_CREATE, _REPLACE) else "previous run failed"
    return Operation(
        key=op_key(Action.PROVISION, resource.address),
        action=Action.PROVISION,
        kind=resource.kind,
        name=resource.name,
        resource=resource,
        prior=prior,
        depends_on=tuple(sorted(waits)),
        reason=reason,
    )


__all__ = [
    "Action",
    "Operation",
    "Plan",
    "Unknown",
    "op_key",
    "plan",
]
