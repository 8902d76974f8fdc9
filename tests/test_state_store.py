"""State store tests."""
from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from stratactl.resources import ResourceKind
from stratactl.state import FileStateStore, InMemoryStateStore, StateEntry, StateStoreError


def _entry(resource_id: str = "net-1", **changes: object) -> StateEntry:
    entry = StateEntry(
        kind=ResourceKind.NETWORK,
        name="main",
        id=resource_id,
        attributes={"cidr_block": "10.0.0.0/16", "tags": {"Name": "main"}},
        outputs={"id": resource_id},
    )
    return entry.with_changes(**changes) if changes else entry


def test_missing_file_loads_empty_snapshot(tmp_path: Path) -> None:
    """A fresh state directory has no entries and serial zero."""
    store = FileStateStore(tmp_path / "state")

    snapshot = store.load()

    assert len(snapshot) == 0
    assert snapshot.serial == 0
    assert not store.path.exists()


def test_record_and_load_roundtrip(tmp_path: Path) -> None:
    """Recorded entries survive a reload with restrictive permissions."""
    store = FileStateStore(tmp_path / "state")

    store.record(_entry(tainted=True, depends_on=("Subnet.public",)))

    assert (store.path.stat().st_mode & 0o777) == 0o640
    snapshot = FileStateStore(tmp_path / "state").load()
    entry = snapshot.get((ResourceKind.NETWORK, "main"))
    assert entry is not None
    assert entry.id == "net-1"
    assert entry.tainted is True
    assert entry.provisioned is None
    assert entry.depends_on == ("Subnet.public",)
    assert entry.attributes["tags"] == {"Name": "main"}
    assert snapshot.serial == 1
    assert list(snapshot.by_address()) == ["Network.main"]


def test_serial_increments_on_every_write(tmp_path: Path) -> None:
    """Each record or removal bumps the serial."""
    store = FileStateStore(tmp_path)

    store.record(_entry())
    store.record(_entry(provisioned=True))
    store.remove(ResourceKind.NETWORK, "main")

    raw = yaml.safe_load(store.path.read_text(encoding="utf-8"))
    assert raw["serial"] == 3
    assert raw["version"] == 1
    assert raw["resources"] == []


def test_remove_with_stale_id_keeps_successor(tmp_path: Path) -> None:
    """Removing a replaced object does not drop the new record."""
    store = FileStateStore(tmp_path)
    store.record(_entry("net-2"))

    store.remove(ResourceKind.NETWORK, "main", resource_id="net-1")
    assert (ResourceKind.NETWORK, "main") in store.load()

    store.remove(ResourceKind.NETWORK, "main", resource_id="net-2")
    assert (ResourceKind.NETWORK, "main") not in store.load()


def test_in_memory_store_matches_file_semantics() -> None:
    """The in-memory store honours the same id guard and serial."""
    store = InMemoryStateStore()
    store.record(_entry("net-2"))

    store.remove(ResourceKind.NETWORK, "main", resource_id="net-1")
    store.remove(ResourceKind.SUBNET, "missing")

    snapshot = store.load()
    assert len(snapshot) == 1
    assert snapshot.serial == 1


def test_unsupported_version_raises(tmp_path: Path) -> None:
    """Unknown state format versions are refused."""
    store = FileStateStore(tmp_path)
    store.path.write_text("version: 99\nresources: []\n", encoding="utf-8")

    with pytest.raises(StateStoreError, match="format version"):
        store.load()


@pytest.mark.parametrize(
    "content",
    [
        "- not\n- a mapping\n",
        "resources:\n  - just-a-string\n",
        "resources:\n  - kind: Network\n    name: main\n",
        "resources:\n  - kind: Bogus\n    name: main\n    id: x\n",
        "resources:\n  - kind: Network\n    name: main\n    id: x\n    depends_on: nope\n",
    ],
)
def test_malformed_state_raises(tmp_path: Path, content: str) -> None:
    """Structurally invalid state files raise StateStoreError."""
    store = FileStateStore(tmp_path)
    store.path.write_text(content, encoding="utf-8")

    with pytest.raises(StateStoreError):
        store.load()
