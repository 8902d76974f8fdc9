"""Per-kind handlers that turn operations into provider or filesystem calls.

Handlers run on worker threads. They receive fully resolved inputs and a
``call`` wrapper that applies the executor's rate-limit retry policy to each
provider request.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from ..credentials import CredentialVault, generate_keypair, persist_credential
from ..errors import InvalidParameterError
from ..planner import Operation
from ..providers.base import CloudResourceAdapter, ProviderResource
from ..providers.local import LocalFileSink, sha256_hex
from ..resources import ResourceKind, schema_for

LOGGER = logging.getLogger(__name__)

Call = Callable[..., Any]

DEFAULT_FILE_MODE = 0o644


@dataclass(frozen=True)
class HandlerResult:
    """Identity, outputs and warnings produced by a create or update."""

    id: str
    outputs: Mapping[str, Any] = field(default_factory=dict)
    warnings: tuple[str, ...] = ()


class ResourceHandler(Protocol):
    """Lifecycle hooks for one family of resource kinds."""

    def create(self, op: Operation, inputs: Mapping[str, Any], call: Call) -> HandlerResult:
        """Create the target of *op*."""

    def update(
        self,
        op: Operation,
        resource_id: str,
        inputs: Mapping[str, Any],
        call: Call,
    ) -> HandlerResult:
        """Apply ``op.changed`` to an existing object."""

    def delete(self, op: Operation, resource_id: str, call: Call) -> list[str]:
        """Delete an existing object and return warnings."""


def _public_outputs(kind: ResourceKind, outputs: Mapping[str, Any]) -> dict[str, Any]:
    """Keep only the declared, non-sensitive outputs of *kind*."""
    schema = schema_for(kind)
    return {name: outputs[name] for name in schema.outputs if name != "id" and name in outputs}


def _from_provider(kind: ResourceKind, resource: ProviderResource) -> HandlerResult:
    return HandlerResult(id=resource.id, outputs=_public_outputs(kind, resource.outputs))


@dataclass(slots=True)
class CloudHandler:
    """Handle kinds that map directly onto the cloud provider API."""

    adapter: CloudResourceAdapter

    def create(self, op: Operation, inputs: Mapping[str, Any], call: Call) -> HandlerResult:
        """Create the object through the provider."""
        return _from_provider(op.kind, call(self.adapter.create, op.kind, inputs))

    def update(
        self,
        op: Operation,
        resource_id: str,
        inputs: Mapping[str, Any],
        call: Call,
    ) -> HandlerResult:
        """Send the changed attributes to the provider."""
        resource = call(self.adapter.update, op.kind, resource_id, inputs, op.changed)
        return _from_provider(op.kind, resource)

    def delete(self, op: Operation, resource_id: str, call: Call) -> list[str]:
        """Delete the object through the provider."""
        call(self.adapter.delete, op.kind, resource_id)
        return []


@dataclass(slots=True)
class KeyPairHandler:
    """Generate, persist and register SSH key pairs.

    The private half is written to ``private_key_path`` and handed to the
    credential vault; only the public half and its fingerprint reach the
    provider.
    """

    adapter: CloudResourceAdapter
    sink: LocalFileSink
    vault: CredentialVault

    def create(self, op: Operation, inputs: Mapping[str, Any], call: Call) -> HandlerResult:
        """Generate a keypair, write it to disk and import the public key."""
        algorithm = str(inputs.get("algorithm") or "rsa")
        bits = inputs.get("bits")
        credential = generate_keypair(algorithm, int(bits) if bits is not None else None)
        private_path = Path(str(inputs["private_key_path"])).expanduser()
        public_path = Path(str(inputs["public_key_path"])).expanduser()
        credential, warnings = persist_credential(credential, private_path, public_path, self.sink)
        self.vault.put(op.address, credential)
        LOGGER.info("Generated %s key pair %s (%s).", algorithm, op.address, credential.fingerprint)

        params: dict[str, Any] = {
            "key_name": inputs["key_name"],
            "public_key": credential.public_openssh,
            "fingerprint": credential.fingerprint,
        }
        if inputs.get("tags") is not None:
            params["tags"] = inputs["tags"]
        resource = call(self.adapter.create, ResourceKind.KEY_PAIR, params)
        outputs = {
            "key_name": inputs["key_name"],
            "fingerprint": credential.fingerprint,
            "public_key": credential.public_openssh,
            "private_key_path": str(private_path),
        }
        return HandlerResult(id=resource.id, outputs=outputs, warnings=tuple(warnings))

    def update(
        self,
        op: Operation,
        resource_id: str,
        inputs: Mapping[str, Any],
        call: Call,
    ) -> HandlerResult:
        """Update provider-side metadata; key material never changes in place."""
        call(self.adapter.update, op.kind, resource_id, inputs, op.changed)
        prior_outputs = dict(op.prior.outputs) if op.prior is not None else {}
        return HandlerResult(id=resource_id, outputs=prior_outputs)

    def delete(self, op: Operation, resource_id: str, call: Call) -> list[str]:
        """Remove the key from the provider; local key files are left in place."""
        call(self.adapter.delete, op.kind, resource_id)
        self.vault.discard(op.address)
        return []


def _file_mode(value: object) -> int:
    if value is None:
        return DEFAULT_FILE_MODE
    if isinstance(value, int):
        return value
    try:
        return int(str(value), 8)
    except ValueError as exc:
        raise InvalidParameterError(f"permissions must be an octal mode, got {value!r}") from exc


@dataclass(slots=True)
class LocalFileHandler:
    """Write ``LocalFile`` resources through the local sink."""

    sink: LocalFileSink

    def _write(self, inputs: Mapping[str, Any]) -> HandlerResult:
        path = Path(str(inputs["path"])).expanduser()
        content = inputs.get("content")
        data = ("" if content is None else str(content)).encode("utf-8")
        warnings = self.sink.write(path, data, _file_mode(inputs.get("permissions")))
        outputs = {"path": str(path), "sha256": sha256_hex(data)}
        return HandlerResult(id=str(path), outputs=outputs, warnings=tuple(warnings))

    def create(self, op: Operation, inputs: Mapping[str, Any], call: Call) -> HandlerResult:
        """Write the file."""
        return self._write(inputs)

    def update(
        self,
        op: Operation,
        resource_id: str,
        inputs: Mapping[str, Any],
        call: Call,
    ) -> HandlerResult:
        """Rewrite the file with its new content or mode."""
        return self._write(inputs)

    def delete(self, op: Operation, resource_id: str, call: Call) -> list[str]:
        """Remove the file unless it was changed outside stratactl."""
        expected = op.prior.outputs.get("sha256") if op.prior is not None else None
        return self.sink.remove(Path(resource_id), expected_sha256=expected)


def build_handlers(
    adapter: CloudResourceAdapter,
    sink: LocalFileSink,
    vault: CredentialVault,
) -> dict[ResourceKind, ResourceHandler]:
    """Return the handler responsible for each resource kind."""
    cloud = CloudHandler(adapter)
    local = LocalFileHandler(sink)
    handlers: dict[ResourceKind, ResourceHandler] = {}
    for kind in ResourceKind:
        if kind is ResourceKind.KEY_PAIR:
            handlers[kind] = KeyPairHandler(adapter, sink, vault)
        elif schema_for(kind).handler == "local":
            handlers[kind] = local
        else:
            handlers[kind] = cloud
    return handlers


__all__ = [
    "CloudHandler",
    "HandlerResult",
    "KeyPairHandler",
    "LocalFileHandler",
    "ResourceHandler",
    "build_handlers",
]
