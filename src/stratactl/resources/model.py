"""Typed descriptors for declared infrastructure and the document parser.

A declared configuration is a YAML mapping with a ``resources`` list::

    resources:
      - kind: Network
        name: main
        attributes:
          cidr_block: 10.0.0.0/16
      - kind: Subnet
        name: public
        attributes:
          network: ${Network.main}
          cidr_block: 10.0.1.0/24

A string of the exact form ``${Kind.name}`` or ``${Kind.name.output}`` is a
reference; the output defaults to ``id``. References are allowed anywhere in
an attribute value (including list items and nested mappings) but never
inside a larger string.
"""
from __future__ import annotations

import ipaddress
import os
import re
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from ..errors import SchemaError, UnresolvedReferenceError
from .kinds import ResourceKind, schema_for

REFERENCE_PATTERN = re.compile(
    r"^\$\{(?P<kind>[A-Za-z]+)\.(?P<name>[A-Za-z0-9_-]+)(?:\.(?P<output>[a-z_]+))?\}$"
)
NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")
ALLOWED_ENTRY_KEYS = {"kind", "name", "attributes", "depends_on", "provisioners"}
ALLOWED_PROVISIONER_KEYS = {"type", "source", "destination", "connection", "depends_on"}
ALLOWED_CONNECTION_KEYS = {"host", "user", "port", "private_key"}
SUPPORTED_PROVISIONERS = {"file"}


@dataclass(frozen=True, order=True)
class Reference:
    """Pointer from an attribute to another resource's identity or output."""

    kind: ResourceKind
    name: str
    output: str = "id"

    @property
    def address(self) -> str:
        """Return the ``Kind.name`` address of the referenced resource."""
        return f"{self.kind.value}.{self.name}"

    @property
    def key(self) -> tuple[ResourceKind, str]:
        """Return the ``(kind, name)`` identity of the referenced resource."""
        return (self.kind, self.name)

    def symbol(self) -> str:
        """Return the declared ``${...}`` form of the reference."""
        if self.output == "id":
            return f"${{{self.address}}}"
        return f"${{{self.address}.{self.output}}}"

    def __str__(self) -> str:
        """Render the reference in its declared form."""
        return self.symbol()


@dataclass(frozen=True)
class ConnectionSpec:
    """How the provisioner reaches a freshly created instance."""

    host: object
    user: str
    private_key: object
    port: int = 22


@dataclass(frozen=True)
class ProvisionerSpec:
    """A post-create action attached to an instance (file transfer only)."""

    type: str
    source: str
    destination: str
    connection: ConnectionSpec
    depends_on: tuple[Reference, ...] = ()

    def references(self) -> Iterator[Reference]:
        """Yield every reference used by the provisioner."""
        yield from iter_references(self.connection.host)
        yield from iter_references(self.connection.private_key)
        yield from self.depends_on


@dataclass(frozen=True)
class ResourceDescriptor:
    """A declared infrastructure object."""

    kind: ResourceKind
    name: str
    attributes: Mapping[str, Any] = field(default_factory=dict)
    depends_on: tuple[Reference, ...] = ()
    provisioners: tuple[ProvisionerSpec, ...] = ()

    @property
    def key(self) -> tuple[ResourceKind, str]:
        """Return the ``(kind, name)`` identity."""
        return (self.kind, self.name)

    @property
    def address(self) -> str:
        """Return the ``Kind.name`` address used in plans and reports."""
        return f"{self.kind.value}.{self.name}"

    def references(self) -> Iterator[Reference]:
        """Yield attribute references followed by explicit ``depends_on`` hints."""
        for value in self.attributes.values():
            yield from iter_references(value)
        yield from self.depends_on

    def provisioner_references(self) -> Iterator[Reference]:
        """Yield references used by attached provisioners."""
        for provisioner in self.provisioners:
            yield from provisioner.references()

    def symbolic_attributes(self) -> dict[str, Any]:
        """Return attributes with references rendered in ``${...}`` form."""
        return {key: symbolize(value) for key, value in sorted(self.attributes.items())}


def address_of(kind: ResourceKind, name: str) -> str:
    """Return the ``Kind.name`` address for a key."""
    return f"{kind.value}.{name}"


def parse_reference(value: str) -> Reference | None:
    """Return a :class:`Reference` when *value* is a ``${...}`` expression."""
    match = REFERENCE_PATTERN.match(value.strip())
    if match is None:
        return None
    try:
        kind = ResourceKind.parse(match.group("kind"))
    except ValueError as exc:
        raise SchemaError(f"Reference {value!r} names an unknown kind") from exc
    return Reference(kind=kind, name=match.group("name"), output=match.group("output") or "id")


def iter_references(value: object) -> Iterator[Reference]:
    """Yield references found anywhere inside *value*."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def map_references(value: object, resolve: Callable[[Reference], object]) -> object:
    """Return a copy of *value* with each reference replaced by ``resolve(ref)``."""
    if isinstance(value, Reference):
        return resolve(value)
    if isinstance(value, Mapping):
        return {key: map_references(item, resolve) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [map_references(item, resolve) for item in value]
    return value


def symbolize(value: object) -> object:
    """Render references in *value* back to their declared string form."""
    return map_references(value, lambda ref: ref.symbol())


def _convert_value(value: object) -> object:
    if isinstance(value, str):
        reference = parse_reference(value)
        return reference if reference is not None else value
    if isinstance(value, Mapping):
        return {str(key): _convert_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_convert_value(item) for item in value]
    return value


def _as_mapping(value: object, label: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise SchemaError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    return value


def _as_list(value: object, label: str) -> Sequence[Any]:
    if value is None:
        return []
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise SchemaError(f"Expected {label} to be a list. Got {type(value).__name__}.")
    return value


def _parse_depends_on(raw: object, label: str) -> tuple[Reference, ...]:
    references: list[Reference] = []
    for index, item in enumerate(_as_list(raw, label)):
        text = str(item).strip()
        reference = parse_reference(text if text.startswith("${") else f"${{{text}}}")
        if reference is None:
            raise SchemaError(f"{label}[{index}] must name a resource as Kind.name. Got {item!r}.")
        references.append(reference)
    return tuple(references)


def _parse_provisioner(raw: object, label: str) -> ProvisionerSpec:
    entry = _as_mapping(raw, label)
    unknown = set(entry) - ALLOWED_PROVISIONER_KEYS
    if unknown:
        raise SchemaError(f"Unknown keys for {label}: {', '.join(sorted(unknown))}.")
    provisioner_type = str(entry.get("type", "")).strip()
    if provisioner_type not in SUPPORTED_PROVISIONERS:
        allowed = ", ".join(sorted(SUPPORTED_PROVISIONERS))
        raise SchemaError(f"{label}.type must be one of: {allowed}. Got {provisioner_type!r}.")
    for required in ("source", "destination", "connection"):
        if entry.get(required) in (None, ""):
            raise SchemaError(f"{label} is missing required field '{required}'.")

    connection_raw = _as_mapping(entry["connection"], f"{label}.connection")
    unknown = set(connection_raw) - ALLOWED_CONNECTION_KEYS
    if unknown:
        raise SchemaError(
            f"Unknown keys for {label}.connection: {', '.join(sorted(unknown))}."
        )
    for required in ("host", "user", "private_key"):
        if connection_raw.get(required) in (None, ""):
            raise SchemaError(f"{label}.connection is missing required field '{required}'.")
    port = connection_raw.get("port", 22)
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise SchemaError(f"{label}.connection.port must be a TCP port number.")

    connection = ConnectionSpec(
        host=_convert_value(connection_raw["host"]),
        user=str(connection_raw["user"]),
        private_key=_convert_value(connection_raw["private_key"]),
        port=port,
    )
    return ProvisionerSpec(
        type=provisioner_type,
        source=str(entry["source"]),
        destination=str(entry["destination"]),
        connection=connection,
        depends_on=_parse_depends_on(entry.get("depends_on"), f"{label}.depends_on"),
    )


def _parse_entry(raw: object, index: int) -> ResourceDescriptor:
    label = f"resources[{index}]"
    entry = _as_mapping(raw, label)
    unknown = set(entry) - ALLOWED_ENTRY_KEYS
    if unknown:
        raise SchemaError(f"Unknown keys for {label}: {', '.join(sorted(unknown))}.")

    try:
        kind = ResourceKind.parse(entry.get("kind", ""))
    except ValueError as exc:
        raise SchemaError(f"{label}: {exc}") from exc

    name = str(entry.get("name", "")).strip()
    if not NAME_PATTERN.match(name):
        raise SchemaError(f"{label}: invalid resource name {name!r}.")
    address = address_of(kind, name)

    schema = schema_for(kind)
    attributes = dict(_as_mapping(entry.get("attributes"), f"{address}.attributes"))
    missing = sorted(key for key in schema.required if attributes.get(key) in (None, ""))
    if missing:
        raise SchemaError(f"{address} is missing required attribute(s): {', '.join(missing)}.")
    unknown_attributes = set(attributes) - schema.attributes
    if unknown_attributes:
        raise SchemaError(
            f"{address} has unknown attribute(s): {', '.join(sorted(unknown_attributes))}."
        )

    converted = {key: _convert_value(value) for key, value in attributes.items()}
    for attribute, kinds in schema.links.items():
        if attribute not in converted:
            continue
        value = converted[attribute]
        if not isinstance(value, Reference) or value.kind not in kinds:
            expected = " or ".join(item.value for item in kinds)
            raise SchemaError(f"{address}.{attribute} must reference a {expected}.")

    if "cidr_block" in converted and not isinstance(converted["cidr_block"], Reference):
        try:
            ipaddress.ip_network(str(converted["cidr_block"]))
        except ValueError as exc:
            raise SchemaError(f"{address}.cidr_block is not a valid CIDR: {exc}") from exc

    provisioners_raw = _as_list(entry.get("provisioners"), f"{address}.provisioners")
    if provisioners_raw and not schema.supports_provisioners:
        raise SchemaError(f"{address}: {kind.value} resources do not accept provisioners.")
    provisioners = tuple(
        _parse_provisioner(item, f"{address}.provisioners[{position}]")
        for position, item in enumerate(provisioners_raw)
    )

    return ResourceDescriptor(
        kind=kind,
        name=name,
        attributes=converted,
        depends_on=_parse_depends_on(entry.get("depends_on"), f"{address}.depends_on"),
        provisioners=provisioners,
    )


def _check_references(resources: Sequence[ResourceDescriptor]) -> None:
    declared = {resource.key: resource for resource in resources}
    for resource in resources:
        # Secret outputs are only accepted as a connection's whole private_key.
        checked = [(reference, False) for reference in resource.references()]
        for provisioner in resource.provisioners:
            private_key = provisioner.connection.private_key
            for reference in provisioner.references():
                checked.append((reference, reference is private_key))
        for reference, credential in checked:
            target = declared.get(reference.key)
            if target is None:
                raise UnresolvedReferenceError(resource.address, reference.address)
            schema = schema_for(target.kind)
            if not schema.exposes(reference.output):
                raise UnresolvedReferenceError(
                    resource.address,
                    reference.address,
                    f"{target.kind.value} does not expose output '{reference.output}'",
                )
            if reference.output in schema.sensitive_outputs and not credential:
                raise SchemaError(
                    f"{resource.address}: {reference.symbol()} is secret and may only be "
                    "used as a provisioner connection private_key."
                )


def _check_subnet_ranges(resources: Sequence[ResourceDescriptor]) -> None:
    declared = {resource.key: resource for resource in resources}
    for resource in resources:
        if resource.kind is not ResourceKind.SUBNET:
            continue
        network_ref = resource.attributes["network"]
        network = declared[network_ref.key]
        subnet_cidr = resource.attributes["cidr_block"]
        network_cidr = network.attributes["cidr_block"]
        if isinstance(subnet_cidr, Reference) or isinstance(network_cidr, Reference):
            continue
        subnet_net = ipaddress.ip_network(str(subnet_cidr))
        network_net = ipaddress.ip_network(str(network_cidr))
        if subnet_net.version != network_net.version or not subnet_net.subnet_of(network_net):
            raise SchemaError(
                f"{resource.address}.cidr_block {subnet_cidr} is outside "
                f"{network.address} ({network_cidr})."
            )


def parse(document: Mapping[str, Any]) -> list[ResourceDescriptor]:
    """Parse a declared configuration into resource descriptors.

    Raises :class:`SchemaError` for malformed entries and
    :class:`UnresolvedReferenceError` for dangling references. Declaration
    order is preserved.
    """
    if not isinstance(document, Mapping):
        raise SchemaError("Configuration document must be a mapping.")
    unknown = set(document) - {"version", "resources"}
    if unknown:
        raise SchemaError(f"Unknown top-level keys: {', '.join(sorted(unknown))}.")

    resources: list[ResourceDescriptor] = []
    seen: set[tuple[ResourceKind, str]] = set()
    for index, raw in enumerate(_as_list(document.get("resources"), "resources")):
        resource = _parse_entry(raw, index)
        if resource.key in seen:
            raise SchemaError(f"Duplicate resource {resource.address}.")
        seen.add(resource.key)
        resources.append(resource)

    _check_references(resources)
    _check_subnet_ranges(resources)
    return resources


def load_document(path: str | os.PathLike[str]) -> dict[str, Any]:
    """Read a declared configuration document from YAML."""
    source = Path(path)
    try:
        data = yaml.safe_load(source.read_text(encoding="utf-8")) or {}
    except FileNotFoundError as exc:
        raise SchemaError(f"Configuration file {source} does not exist.") from exc
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise SchemaError(f"Failed to parse configuration file {source}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise SchemaError(f"Configuration file {source} must contain a mapping.")
    return dict(data)


__all__ = [
    "ConnectionSpec",
    "ProvisionerSpec",
    "Reference",
    "ResourceDescriptor",
    "address_of",
    "iter_references",
    "load_document",
    "map_references",
    "parse",
    "parse_reference",
    "symbolize",
]
