"""Persistence for the last observed state of managed resources.

The file store keeps a single YAML document (``state.yml`` by default) under
the configured state directory and rewrites it atomically after every
operation the executor completes. The executor's dispatch loop is the only
writer; the planner reads a snapshot before execution starts.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterator, Mapping
from copy import deepcopy
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Protocol

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage stratactl state. Install with `pip install stratactl`."
    ) from exc

from ..resources import ResourceKind, address_of

STATE_FORMAT_VERSION = 1

Key = tuple[ResourceKind, str]


class StateStoreError(RuntimeError):
    """Raised when state operations fail."""


@dataclass(frozen=True)
class StateEntry:
    """Last-known provider identity and applied attributes for one resource."""

    kind: ResourceKind
    name: str
    id: str
    attributes: Mapping[str, Any] = field(default_factory=dict)
    outputs: Mapping[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()
    provisioned: bool | None = None
    tainted: bool = False

    @property
    def key(self) -> Key:
        """Return the ``(kind, name)`` identity."""
        return (self.kind, self.name)

    @property
    def address(self) -> str:
        """Return the ``Kind.name`` address."""
        return address_of(self.kind, self.name)

    def with_changes(self, **changes: Any) -> StateEntry:
        """Return a copy of the entry with *changes* applied."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {
            "kind": self.kind.value,
            "name": self.name,
            "id": self.id,
            "attributes": deepcopy(dict(self.attributes)),
            "outputs": deepcopy(dict(self.outputs)),
            "depends_on": list(self.depends_on),
        }
        if self.provisioned is not None:
            payload["provisioned"] = self.provisioned
        if self.tainted:
            payload["tainted"] = True
        return payload

    @classmethod
    def from_dict(cls, raw: Mapping[str, object]) -> StateEntry:
        """Build an entry from its serialised form."""
        try:
            kind = ResourceKind.parse(raw["kind"])
            name = str(raw["name"])
            resource_id = str(raw["id"])
        except (KeyError, ValueError) as exc:
            raise StateStoreError(f"Malformed state entry: {dict(raw)!r}") from exc
        attributes = raw.get("attributes") or {}
        outputs = raw.get("outputs") or {}
        depends_on = raw.get("depends_on") or []
        if not isinstance(attributes, Mapping) or not isinstance(outputs, Mapping):
            raise StateStoreError(f"State entry {kind.value}.{name} has malformed attributes.")
        if not isinstance(depends_on, list):
            raise StateStoreError(f"State entry {kind.value}.{name} has malformed depends_on.")
        provisioned = raw.get("provisioned")
        return cls(
            kind=kind,
            name=name,
            id=resource_id,
            attributes=dict(attributes),
            outputs=dict(outputs),
            depends_on=tuple(str(item) for item in depends_on),
            provisioned=bool(provisioned) if provisioned is not None else None,
            tainted=bool(raw.get("tainted", False)),
        )


@dataclass(frozen=True)
class ObservedState:
    """Immutable snapshot of the state store."""

    entries: Mapping[Key, StateEntry] = field(default_factory=dict)
    serial: int = 0

    def __contains__(self, key: object) -> bool:
        """Return ``True`` when *key* has a recorded entry."""
        return key in self.entries

    def __iter__(self) -> Iterator[StateEntry]:
        """Iterate entries in recorded order."""
        return iter(self.entries.values())

    def __len__(self) -> int:
        """Return the number of recorded resources."""
        return len(self.entries)

    def get(self, key: Key) -> StateEntry | None:
        """Return the entry recorded for *key*, if any."""
        return self.entries.get(key)

    def by_address(self) -> dict[str, StateEntry]:
        """Return entries keyed by ``Kind.name`` address."""
        return {entry.address: entry for entry in self.entries.values()}


class StateStore(Protocol):
    """Interface the planner and executor use to read and write state."""

    def load(self) -> ObservedState:
        """Return a snapshot of the recorded state."""

    def record(self, entry: StateEntry) -> None:
        """Insert or replace the entry for ``entry.key``."""

    def remove(self, kind: ResourceKind, name: str, *, resource_id: str | None = None) -> None:
        """Drop the entry for ``(kind, name)``.

        When *resource_id* is given the entry is only dropped if it still
        refers to that provider id, so deleting a replaced object never
        discards the record of its successor.
        """


class InMemoryStateStore:
    """State store that keeps entries in process memory."""

    def __init__(self, entries: Mapping[Key, StateEntry] | None = None) -> None:
        """Seed the store with optional *entries*."""
        self._entries: dict[Key, StateEntry] = dict(entries or {})
        self._serial = 0

    def load(self) -> ObservedState:
        """Return a snapshot of the recorded state."""
        return ObservedState(entries=dict(self._entries), serial=self._serial)

    def record(self, entry: StateEntry) -> None:
        """Insert or replace the entry for ``entry.key``."""
        self._entries[entry.key] = entry
        self._serial += 1

    def remove(self, kind: ResourceKind, name: str, *, resource_id: str | None = None) -> None:
        """Drop the entry for ``(kind, name)``."""
        existing = self._entries.get((kind, name))
        if existing is None:
            return
        if resource_id is not None and existing.id != resource_id:
            return
        del self._entries[(kind, name)]
        self._serial += 1


@dataclass(frozen=True)
class FileStateStore:
    """State store backed by an atomically rewritten YAML file."""

    root: Path
    filename: str = "state.yml"

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    @property
    def path(self) -> Path:
        """Return the state file path."""
        return self.root / self.filename

    def ensure_root(self) -> None:
        """Create the state directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def load(self) -> ObservedState:
        """Read the state file, returning an empty snapshot when missing."""
        raw = self._read()
        entries: dict[Key, StateEntry] = {}
        for item in raw.get("resources", []):
            if not isinstance(item, Mapping):
                raise StateStoreError(f"Malformed state entry in {self.path}: {item!r}")
            entry = StateEntry.from_dict(item)
            entries[entry.key] = entry
        serial = raw.get("serial", 0)
        return ObservedState(entries=entries, serial=int(serial) if serial else 0)

    def record(self, entry: StateEntry) -> None:
        """Insert or replace the entry for ``entry.key``."""
        snapshot = self.load()
        entries = dict(snapshot.entries)
        entries[entry.key] = entry
        self._write(entries, snapshot.serial + 1)

    def remove(self, kind: ResourceKind, name: str, *, resource_id: str | None = None) -> None:
        """Drop the entry for ``(kind, name)``."""
        snapshot = self.load()
        existing = snapshot.get((kind, name))
        if existing is None:
            return
        if resource_id is not None and existing.id != resource_id:
            return
        entries = dict(snapshot.entries)
        del entries[(kind, name)]
        self._write(entries, snapshot.serial + 1)

    # ------------------------------------------------------------------
    def _read(self) -> Mapping[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
            raise StateStoreError(f"Failed to parse state file {self.path}: {exc}") from exc
        if data is None:
            return {}
        if not isinstance(data, Mapping):
            raise StateStoreError(f"State file {self.path} must contain a mapping.")
        version = data.get("version", STATE_FORMAT_VERSION)
        if version != STATE_FORMAT_VERSION:
            raise StateStoreError(
                f"State file {self.path} uses unsupported format version {version!r}."
            )
        return data

    def _write(self, entries: Mapping[Key, StateEntry], serial: int) -> None:
        self.ensure_root()
        payload = {
            "version": STATE_FORMAT_VERSION,
            "serial": serial,
            "resources": [entry.to_dict() for entry in entries.values()],
        }
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{self.filename}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            os.replace(tmp_path, self.path)
            os.chmod(self.path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)


__all__ = [
    "FileStateStore",
    "InMemoryStateStore",
    "ObservedState",
    "StateEntry",
    "StateStore",
    "StateStoreError",
]
