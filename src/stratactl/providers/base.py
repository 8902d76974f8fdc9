"""Provider API contract and the adapter that maps resource kinds onto it."""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from ..errors import InvalidParameterError
from ..resources import ResourceKind


@dataclass(frozen=True)
class ProviderResource:
    """Identity and computed outputs returned by the provider."""

    id: str
    outputs: Mapping[str, Any] = field(default_factory=dict)


class CloudAPI(Protocol):
    """CRUD surface of the remote provider.

    Every call returns a :class:`ProviderResource` (or ``None`` for deletes)
    or raises one of the typed :class:`~stratactl.errors.ProviderError`
    subclasses.
    """

    def create_network(self, params: Mapping[str, Any]) -> ProviderResource: ...
    def update_network(self, resource_id: str, params: Mapping[str, Any]) -> ProviderResource: ...
    def delete_network(self, resource_id: str) -> None: ...

    def create_subnet(self, params: Mapping[str, Any]) -> ProviderResource: ...
    def update_subnet(self, resource_id: str, params: Mapping[str, Any]) -> ProviderResource: ...
    def delete_subnet(self, resource_id: str) -> None: ...

    def create_internet_gateway(self, params: Mapping[str, Any]) -> ProviderResource: ...
    def update_internet_gateway(
        self, resource_id: str, params: Mapping[str, Any]
    ) -> ProviderResource: ...
    def delete_internet_gateway(self, resource_id: str) -> None: ...

    def create_nat_gateway(self, params: Mapping[str, Any]) -> ProviderResource: ...
    def update_nat_gateway(self, resource_id: str, params: Mapping[str, Any]) -> ProviderResource: ...
    def delete_nat_gateway(self, resource_id: str) -> None: ...

    def create_route_table(self, params: Mapping[str, Any]) -> ProviderResource: ...
    def update_route_table(self, resource_id: str, params: Mapping[str, Any]) -> ProviderResource: ...
    def delete_route_table(self, resource_id: str) -> None: ...

    def associate_route_table(self, route_table_id: str, subnet_id: str) -> ProviderResource: ...
    def replace_route_table_association(
        self, association_id: str, route_table_id: str
    ) -> ProviderResource: ...
    def disassociate_route_table(self, association_id: str) -> None: ...

    def create_security_group(self, params: Mapping[str, Any]) -> ProviderResource: ...
    def update_security_group(
        self, resource_id: str, params: Mapping[str, Any]
    ) -> ProviderResource: ...
    def delete_security_group(self, resource_id: str) -> None: ...

    def allocate_elastic_ip(self, params: Mapping[str, Any]) -> ProviderResource: ...
    def associate_elastic_ip(self, allocation_id: str, instance_id: str) -> ProviderResource: ...
    def disassociate_elastic_ip(self, allocation_id: str) -> ProviderResource: ...
    def update_elastic_ip(self, resource_id: str, params: Mapping[str, Any]) -> ProviderResource: ...
    def release_elastic_ip(self, resource_id: str) -> None: ...

    def create_key_pair(self, params: Mapping[str, Any]) -> ProviderResource: ...
    def update_key_pair(self, resource_id: str, params: Mapping[str, Any]) -> ProviderResource: ...
    def delete_key_pair(self, resource_id: str) -> None: ...

    def create_instance(self, params: Mapping[str, Any]) -> ProviderResource: ...
    def update_instance(self, resource_id: str, params: Mapping[str, Any]) -> ProviderResource: ...
    def delete_instance(self, resource_id: str) -> None: ...


_METHOD_STEMS: dict[ResourceKind, str] = {
    ResourceKind.NETWORK: "network",
    ResourceKind.SUBNET: "subnet",
    ResourceKind.INTERNET_GATEWAY: "internet_gateway",
    ResourceKind.NAT_GATEWAY: "nat_gateway",
    ResourceKind.ROUTE_TABLE: "route_table",
    ResourceKind.SECURITY_GROUP: "security_group",
    ResourceKind.KEY_PAIR: "key_pair",
    ResourceKind.INSTANCE: "instance",
}


@dataclass(slots=True)
class CloudResourceAdapter:
    """Translate generic create/update/delete calls into :class:`CloudAPI` calls.

    Most kinds map one-to-one onto ``create_<kind>``/``update_<kind>``/
    ``delete_<kind>``. Route table associations and elastic IPs are
    multi-step on the provider side and are handled explicitly.
    """

    api: CloudAPI

    def create(self, kind: ResourceKind, inputs: Mapping[str, Any]) -> ProviderResource:
        """Create a resource of *kind* from resolved *inputs*."""
        if kind is ResourceKind.ROUTE_TABLE_ASSOCIATION:
            return self.api.associate_route_table(
                _require_str(inputs, "route_table"), _require_str(inputs, "subnet")
            )
        if kind is ResourceKind.ELASTIC_IP:
            params = {key: value for key, value in inputs.items() if key != "instance"}
            allocated = self.api.allocate_elastic_ip(params)
            instance_id = inputs.get("instance")
            if not instance_id:
                return allocated
            associated = self.api.associate_elastic_ip(allocated.id, str(instance_id))
            return ProviderResource(
                id=allocated.id,
                outputs={**allocated.outputs, **associated.outputs},
            )
        return getattr(self.api, f"create_{self._stem(kind)}")(dict(inputs))

    def update(
        self,
        kind: ResourceKind,
        resource_id: str,
        inputs: Mapping[str, Any],
        changed: Sequence[str],
    ) -> ProviderResource:
        """Apply the *changed* attributes of *inputs* to an existing resource."""
        if kind is ResourceKind.ROUTE_TABLE_ASSOCIATION:
            return self.api.replace_route_table_association(
                resource_id, _require_str(inputs, "route_table")
            )
        if kind is ResourceKind.ELASTIC_IP:
            result: ProviderResource | None = None
            if "instance" in changed:
                instance_id = inputs.get("instance")
                if instance_id:
                    result = self.api.associate_elastic_ip(resource_id, str(instance_id))
                else:
                    result = self.api.disassociate_elastic_ip(resource_id)
            remaining = {key: inputs.get(key) for key in changed if key != "instance"}
            if remaining or result is None:
                result = self.api.update_elastic_ip(resource_id, remaining)
            return result
        params = {key: inputs.get(key) for key in changed}
        return getattr(self.api, f"update_{self._stem(kind)}")(resource_id, params)

    def delete(self, kind: ResourceKind, resource_id: str) -> None:
        """Delete the resource with *resource_id*."""
        if kind is ResourceKind.ROUTE_TABLE_ASSOCIATION:
            self.api.disassociate_route_table(resource_id)
            return
        if kind is ResourceKind.ELASTIC_IP:
            self.api.release_elastic_ip(resource_id)
            return
        getattr(self.api, f"delete_{self._stem(kind)}")(resource_id)

    @staticmethod
    def _stem(kind: ResourceKind) -> str:
        try:
            return _METHOD_STEMS[kind]
        except KeyError as exc:
            raise InvalidParameterError(
                f"{kind.value} resources are not managed by the cloud provider"
            ) from exc


def _require_str(inputs: Mapping[str, Any], key: str) -> str:
    value = inputs.get(key)
    if not isinstance(value, str) or not value:
        raise InvalidParameterError(f"Parameter '{key}' must be a resolved identifier.")
    return value


__all__ = ["CloudAPI", "CloudResourceAdapter", "ProviderResource"]
