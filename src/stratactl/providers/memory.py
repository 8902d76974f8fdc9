"""Simulated provider used by tests and the ``memory`` provider setting.

``MemoryCloudAPI`` behaves like a small VPC control plane: it assigns
provider ids, computes outputs such as public IPs, refuses to delete objects
that other objects still use (``Conflict``), rejects references to unknown
ids (``InvalidParameter``) and can persist itself to YAML so successive CLI
invocations see the same simulated cloud. Tests queue errors with
:meth:`MemoryCloudAPI.inject` to exercise retry and failure paths.
"""
from __future__ import annotations

import ipaddress
import os
import tempfile
import threading
from collections.abc import Iterable, Mapping
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from ..errors import ConflictError, InvalidParameterError, NotFoundError, ProviderError
from .base import ProviderResource

_PREFIXES = {
    "network": "vpc",
    "subnet": "subnet",
    "internet_gateway": "igw",
    "nat_gateway": "nat",
    "route_table": "rtb",
    "route_table_association": "rtbassoc",
    "security_group": "sg",
    "elastic_ip": "eipalloc",
    "key_pair": "key",
    "instance": "i",
}

# Parameters holding ids of other objects. Objects listed here cannot be
# deleted while the referencing object exists.
_LINK_PARAMS = {
    "subnet": ("network",),
    "internet_gateway": ("network",),
    "nat_gateway": ("subnet", "elastic_ip"),
    "route_table": ("network",),
    "route_table_association": ("route_table", "subnet"),
    "security_group": ("network",),
    "instance": ("subnet", "security_groups"),
}


@dataclass
class _Record:
    stem: str
    id: str
    params: dict[str, Any]
    outputs: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "stem": self.stem,
            "id": self.id,
            "params": deepcopy(self.params),
            "outputs": deepcopy(self.outputs),
        }


def _ids_in(value: object) -> Iterable[str]:
    if isinstance(value, str) and value:
        yield value
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _ids_in(item)


class MemoryCloudAPI:
    """Thread-safe in-memory implementation of :class:`~stratactl.providers.CloudAPI`."""

    def __init__(self, path: Path | None = None) -> None:
        """Create an empty cloud, or load one previously saved at *path*."""
        self._lock = threading.RLock()
        self._records: dict[str, _Record] = {}
        self._counter = 0
        self._faults: dict[str, list[ProviderError]] = {}
        self.calls: list[tuple[str, tuple[object, ...]]] = []
        self.path = path
        if path is not None and path.exists():
            self._load(path)

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------
    def inject(self, method: str, *errors: ProviderError) -> None:
        """Queue *errors* to be raised by the next calls to *method*."""
        with self._lock:
            self._faults.setdefault(method, []).extend(errors)

    def get(self, resource_id: str) -> dict[str, Any] | None:
        """Return a copy of the stored object for *resource_id*."""
        with self._lock:
            record = self._records.get(resource_id)
            if record is None:
                return None
            return {"id": record.id, **deepcopy(record.params), **deepcopy(record.outputs)}

    def ids(self, stem: str | None = None) -> list[str]:
        """Return ids of live objects, optionally filtered by kind stem."""
        with self._lock:
            return [rid for rid, rec in self._records.items() if stem in (None, rec.stem)]

    def call_names(self) -> list[str]:
        """Return the names of provider calls made so far, in order."""
        with self._lock:
            return [name for name, _ in self.calls]

    # ------------------------------------------------------------------
    # Generic CRUD
    # ------------------------------------------------------------------
    def _enter(self, method: str, *args: object) -> None:
        self.calls.append((method, args))
        queued = self._faults.get(method)
        if queued:
            raise queued.pop(0)

    def _next_id(self, stem: str) -> str:
        self._counter += 1
        return f"{_PREFIXES[stem]}-{self._counter:08x}"

    def _check_links(self, stem: str, params: Mapping[str, Any]) -> None:
        for name in _LINK_PARAMS.get(stem, ()):
            for linked in _ids_in(params.get(name)):
                if linked not in self._records:
                    raise InvalidParameterError(
                        f"{stem}.{name} references unknown id '{linked}'", operation=stem
                    )
        if stem == "route_table":
            for route in params.get("routes") or []:
                if not isinstance(route, Mapping):
                    raise InvalidParameterError("route_table.routes entries must be mappings")
                for target in ("gateway", "nat_gateway"):
                    linked = route.get(target)
                    if linked and linked not in self._records:
                        raise InvalidParameterError(
                            f"route target '{linked}' does not exist", operation=stem
                        )

    def _create(self, stem: str, params: Mapping[str, Any]) -> ProviderResource:
        method = f"create_{stem}"
        with self._lock:
            self._enter(method, dict(params))
            self._check_links(stem, params)
            record = _Record(stem=stem, id=self._next_id(stem), params=deepcopy(dict(params)))
            record.outputs = self._outputs_for(record)
            self._records[record.id] = record
            self._save()
            return ProviderResource(id=record.id, outputs=deepcopy(record.outputs))

    def _update(self, stem: str, resource_id: str, params: Mapping[str, Any]) -> ProviderResource:
        method = f"update_{stem}"
        with self._lock:
            self._enter(method, resource_id, dict(params))
            record = self._require(stem, resource_id)
            self._check_links(stem, params)
            record.params.update(deepcopy(dict(params)))
            self._save()
            return ProviderResource(id=record.id, outputs=deepcopy(record.outputs))

    def _delete(self, stem: str, resource_id: str, method: str | None = None) -> None:
        with self._lock:
            self._enter(method or f"delete_{stem}", resource_id)
            self._require(stem, resource_id)
            users = sorted(
                rec.id
                for rec in self._records.values()
                if rec.id != resource_id and resource_id in self._linked_ids(rec)
            )
            if users:
                raise ConflictError(
                    f"{resource_id} is still in use by {', '.join(users)}", operation=stem
                )
            del self._records[resource_id]
            for rec in self._records.values():
                if rec.stem == "elastic_ip" and rec.outputs.get("instance") == resource_id:
                    rec.outputs["instance"] = None
            self._save()

    def _require(self, stem: str, resource_id: str) -> _Record:
        record = self._records.get(resource_id)
        if record is None or record.stem != stem:
            raise NotFoundError(f"{stem} '{resource_id}' does not exist", operation=stem)
        return record

    def _linked_ids(self, record: _Record) -> set[str]:
        linked: set[str] = set()
        for name in _LINK_PARAMS.get(record.stem, ()):
            linked.update(_ids_in(record.params.get(name)))
        if record.stem == "route_table":
            for route in record.params.get("routes") or []:
                if isinstance(route, Mapping):
                    linked.update(_ids_in([route.get("gateway"), route.get("nat_gateway")]))
        return linked

    def _outputs_for(self, record: _Record) -> dict[str, Any]:
        params = record.params
        if record.stem in {"network", "subnet"}:
            outputs: dict[str, Any] = {"cidr_block": params.get("cidr_block")}
            if record.stem == "subnet":
                outputs["availability_zone"] = params.get("availability_zone") or "zone-a"
            return outputs
        if record.stem == "nat_gateway":
            return {"private_ip": self._private_ip(params.get("subnet"))}
        if record.stem == "elastic_ip":
            return {
                "public_ip": f"198.51.100.{self._counter % 250 + 1}",
                "allocation_id": record.id,
                "instance": None,
            }
        if record.stem == "key_pair":
            return {
                "key_name": params.get("key_name"),
                "fingerprint": params.get("fingerprint"),
            }
        if record.stem == "instance":
            public_ip = None
            if params.get("associate_public_ip_address"):
                public_ip = f"203.0.113.{self._counter % 250 + 1}"
            return {"public_ip": public_ip, "private_ip": self._private_ip(params.get("subnet"))}
        return {}

    def _private_ip(self, subnet_id: object) -> str | None:
        subnet = self._records.get(str(subnet_id)) if subnet_id else None
        if subnet is None:
            return None
        network = ipaddress.ip_network(str(subnet.params.get("cidr_block")))
        offset = 10 + self._counter % max(network.num_addresses - 12, 1)
        return str(network.network_address + offset)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def _load(self, path: Path) -> None:
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
            raise ProviderError(f"Failed to parse simulated cloud file {path}: {exc}") from exc
        self._counter = int(data.get("counter", 0))
        for raw in data.get("records", []):
            record = _Record(
                stem=str(raw["stem"]),
                id=str(raw["id"]),
                params=dict(raw.get("params") or {}),
                outputs=dict(raw.get("outputs") or {}),
            )
            self._records[record.id] = record

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "counter": self._counter,
            "records": [record.to_dict() for record in self._records.values()],
        }
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            os.replace(tmp_path, self.path)
        finally:
            tmp_path.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # CloudAPI surface
    # ------------------------------------------------------------------
    def create_network(self, params: Mapping[str, Any]) -> ProviderResource:
        """Create a VPC network."""
        return self._create("network", params)

    def update_network(self, resource_id: str, params: Mapping[str, Any]) -> ProviderResource:
        """Update mutable network settings."""
        return self._update("network", resource_id, params)

    def delete_network(self, resource_id: str) -> None:
        """Delete a network with no remaining dependents."""
        self._delete("network", resource_id)

    def create_subnet(self, params: Mapping[str, Any]) -> ProviderResource:
        """Create a subnet inside a network."""
        return self._create("subnet", params)

    def update_subnet(self, resource_id: str, params: Mapping[str, Any]) -> ProviderResource:
        """Update mutable subnet settings."""
        return self._update("subnet", resource_id, params)

    def delete_subnet(self, resource_id: str) -> None:
        """Delete a subnet."""
        self._delete("subnet", resource_id)

    def create_internet_gateway(self, params: Mapping[str, Any]) -> ProviderResource:
        """Create and attach an internet gateway."""
        return self._create("internet_gateway", params)

    def update_internet_gateway(
        self, resource_id: str, params: Mapping[str, Any]
    ) -> ProviderResource:
        """Update internet gateway tags."""
        return self._update("internet_gateway", resource_id, params)

    def delete_internet_gateway(self, resource_id: str) -> None:
        """Detach and delete an internet gateway."""
        self._delete("internet_gateway", resource_id)

    def create_nat_gateway(self, params: Mapping[str, Any]) -> ProviderResource:
        """Create a NAT gateway in a subnet using an elastic IP."""
        return self._create("nat_gateway", params)

    def update_nat_gateway(self, resource_id: str, params: Mapping[str, Any]) -> ProviderResource:
        """Update NAT gateway tags."""
        return self._update("nat_gateway", resource_id, params)

    def delete_nat_gateway(self, resource_id: str) -> None:
        """Delete a NAT gateway."""
        self._delete("nat_gateway", resource_id)

    def create_route_table(self, params: Mapping[str, Any]) -> ProviderResource:
        """Create a route table with its routes."""
        return self._create("route_table", params)

    def update_route_table(self, resource_id: str, params: Mapping[str, Any]) -> ProviderResource:
        """Replace routes or tags on a route table."""
        return self._update("route_table", resource_id, params)

    def delete_route_table(self, resource_id: str) -> None:
        """Delete a route table."""
        self._delete("route_table", resource_id)

    def associate_route_table(self, route_table_id: str, subnet_id: str) -> ProviderResource:
        """Associate a subnet with a route table."""
        stem = "route_table_association"
        with self._lock:
            self._enter("associate_route_table", route_table_id, subnet_id)
            for existing in self._records.values():
                if existing.stem == stem and existing.params.get("subnet") == subnet_id:
                    raise ConflictError(
                        f"Subnet {subnet_id} is already associated ({existing.id})",
                        operation="associate_route_table",
                    )
            params = {"route_table": route_table_id, "subnet": subnet_id}
            self._check_links(stem, params)
            record = _Record(stem=stem, id=self._next_id(stem), params=params)
            self._records[record.id] = record
            self._save()
            return ProviderResource(id=record.id)

    def replace_route_table_association(
        self, association_id: str, route_table_id: str
    ) -> ProviderResource:
        """Point an existing association at another route table."""
        return self._update(
            "route_table_association", association_id, {"route_table": route_table_id}
        )

    def disassociate_route_table(self, association_id: str) -> None:
        """Remove a route table association."""
        self._delete("route_table_association", association_id, "disassociate_route_table")

    def create_security_group(self, params: Mapping[str, Any]) -> ProviderResource:
        """Create a security group with its rules."""
        return self._create("security_group", params)

    def update_security_group(
        self, resource_id: str, params: Mapping[str, Any]
    ) -> ProviderResource:
        """Replace security group rules or tags."""
        return self._update("security_group", resource_id, params)

    def delete_security_group(self, resource_id: str) -> None:
        """Delete a security group no instance uses."""
        self._delete("security_group", resource_id)

    def allocate_elastic_ip(self, params: Mapping[str, Any]) -> ProviderResource:
        """Allocate a public elastic IP."""
        return self._create("elastic_ip", params)

    def associate_elastic_ip(self, allocation_id: str, instance_id: str) -> ProviderResource:
        """Attach an elastic IP to an instance."""
        with self._lock:
            self._enter("associate_elastic_ip", allocation_id, instance_id)
            record = self._require("elastic_ip", allocation_id)
            instance = self._require("instance", instance_id)
            record.outputs["instance"] = instance_id
            instance.outputs["public_ip"] = record.outputs.get("public_ip")
            self._save()
            return ProviderResource(id=record.id, outputs=deepcopy(record.outputs))

    def disassociate_elastic_ip(self, allocation_id: str) -> ProviderResource:
        """Detach an elastic IP from whatever instance holds it."""
        with self._lock:
            self._enter("disassociate_elastic_ip", allocation_id)
            record = self._require("elastic_ip", allocation_id)
            record.outputs["instance"] = None
            self._save()
            return ProviderResource(id=record.id, outputs=deepcopy(record.outputs))

    def update_elastic_ip(self, resource_id: str, params: Mapping[str, Any]) -> ProviderResource:
        """Update elastic IP tags."""
        return self._update("elastic_ip", resource_id, params)

    def release_elastic_ip(self, resource_id: str) -> None:
        """Release an elastic IP."""
        self._delete("elastic_ip", resource_id, "release_elastic_ip")

    def create_key_pair(self, params: Mapping[str, Any]) -> ProviderResource:
        """Import a public key under a key name."""
        if not params.get("public_key"):
            raise InvalidParameterError("create_key_pair requires a public_key")
        return self._create("key_pair", params)

    def update_key_pair(self, resource_id: str, params: Mapping[str, Any]) -> ProviderResource:
        """Update key pair tags."""
        return self._update("key_pair", resource_id, params)

    def delete_key_pair(self, resource_id: str) -> None:
        """Delete an imported key pair."""
        self._delete("key_pair", resource_id)

    def create_instance(self, params: Mapping[str, Any]) -> ProviderResource:
        """Launch an instance."""
        return self._create("instance", params)

    def update_instance(self, resource_id: str, params: Mapping[str, Any]) -> ProviderResource:
        """Change instance type, security groups or tags."""
        return self._update("instance", resource_id, params)

    def delete_instance(self, resource_id: str) -> None:
        """Terminate an instance."""
        self._delete("instance", resource_id)


__all__ = ["MemoryCloudAPI"]
