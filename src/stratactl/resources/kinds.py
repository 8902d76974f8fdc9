"""Per-kind schemas for declared resources."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

Handler = Literal["cloud", "local"]


class ResourceKind(str, Enum):
    """Resource kinds understood by the engine."""

    NETWORK = "Network"
    SUBNET = "Subnet"
    INTERNET_GATEWAY = "InternetGateway"
    NAT_GATEWAY = "NatGateway"
    ROUTE_TABLE = "RouteTable"
    ROUTE_TABLE_ASSOCIATION = "RouteTableAssociation"
    SECURITY_GROUP = "SecurityGroup"
    ELASTIC_IP = "ElasticIP"
    KEY_PAIR = "KeyPair"
    INSTANCE = "Instance"
    LOCAL_FILE = "LocalFile"

    @classmethod
    def parse(cls, value: object) -> ResourceKind:
        """Return the kind named by *value* (case-insensitive)."""
        text = str(value).strip()
        for kind in cls:
            if kind.value.lower() == text.lower():
                return kind
        raise ValueError(f"Unknown resource kind '{text}'")


@dataclass(frozen=True)
class KindSchema:
    """Attribute contract and update semantics for one resource kind.

    ``updatable`` lists attributes the provider can change in place. A kind
    with no updatable attributes is replace-only: every change is a
    delete followed by a create. ``links`` names attributes that must hold a
    reference to one of the listed kinds.
    """

    kind: ResourceKind
    required: frozenset[str] = frozenset()
    optional: frozenset[str] = frozenset()
    updatable: frozenset[str] = frozenset()
    outputs: tuple[str, ...] = ("id",)
    sensitive_outputs: frozenset[str] = frozenset()
    links: Mapping[str, tuple[ResourceKind, ...]] = field(default_factory=dict)
    handler: Handler = "cloud"
    supports_provisioners: bool = False

    @property
    def attributes(self) -> frozenset[str]:
        """Return every attribute name the kind accepts."""
        return self.required | self.optional

    @property
    def supports_update(self) -> bool:
        """Return ``True`` when at least one attribute can change in place."""
        return bool(self.updatable)

    def exposes(self, output: str) -> bool:
        """Return ``True`` when *output* can be referenced on this kind."""
        return output in self.outputs or output in self.sensitive_outputs


_TAGS = frozenset({"tags"})

SCHEMAS: dict[ResourceKind, KindSchema] = {
    ResourceKind.NETWORK: KindSchema(
        kind=ResourceKind.NETWORK,
        required=frozenset({"cidr_block"}),
        optional=_TAGS | {"enable_dns_support", "enable_dns_hostnames"},
        updatable=_TAGS | {"enable_dns_support", "enable_dns_hostnames"},
        outputs=("id", "cidr_block"),
    ),
    ResourceKind.SUBNET: KindSchema(
        kind=ResourceKind.SUBNET,
        required=frozenset({"network", "cidr_block"}),
        optional=_TAGS | {"availability_zone", "map_public_ip_on_launch"},
        updatable=_TAGS | {"map_public_ip_on_launch"},
        outputs=("id", "cidr_block", "availability_zone"),
        links={"network": (ResourceKind.NETWORK,)},
    ),
    ResourceKind.INTERNET_GATEWAY: KindSchema(
        kind=ResourceKind.INTERNET_GATEWAY,
        required=frozenset({"network"}),
        optional=_TAGS,
        updatable=_TAGS,
        links={"network": (ResourceKind.NETWORK,)},
    ),
    ResourceKind.NAT_GATEWAY: KindSchema(
        kind=ResourceKind.NAT_GATEWAY,
        required=frozenset({"subnet", "elastic_ip"}),
        optional=_TAGS,
        updatable=_TAGS,
        outputs=("id", "private_ip"),
        links={
            "subnet": (ResourceKind.SUBNET,),
            "elastic_ip": (ResourceKind.ELASTIC_IP,),
        },
    ),
    ResourceKind.ROUTE_TABLE: KindSchema(
        kind=ResourceKind.ROUTE_TABLE,
        required=frozenset({"network"}),
        optional=_TAGS | {"routes"},
        updatable=_TAGS | {"routes"},
        links={"network": (ResourceKind.NETWORK,)},
    ),
    ResourceKind.ROUTE_TABLE_ASSOCIATION: KindSchema(
        kind=ResourceKind.ROUTE_TABLE_ASSOCIATION,
        required=frozenset({"route_table", "subnet"}),
        updatable=frozenset({"route_table"}),
        links={
            "route_table": (ResourceKind.ROUTE_TABLE,),
            "subnet": (ResourceKind.SUBNET,),
        },
    ),
    ResourceKind.SECURITY_GROUP: KindSchema(
        kind=ResourceKind.SECURITY_GROUP,
        required=frozenset({"network", "name"}),
        optional=_TAGS | {"description", "ingress", "egress"},
        updatable=_TAGS | {"ingress", "egress"},
        links={"network": (ResourceKind.NETWORK,)},
    ),
    ResourceKind.ELASTIC_IP: KindSchema(
        kind=ResourceKind.ELASTIC_IP,
        optional=_TAGS | {"instance"},
        updatable=_TAGS | {"instance"},
        outputs=("id", "public_ip", "allocation_id"),
        links={"instance": (ResourceKind.INSTANCE,)},
    ),
    ResourceKind.KEY_PAIR: KindSchema(
        kind=ResourceKind.KEY_PAIR,
        required=frozenset({"key_name", "private_key_path", "public_key_path"}),
        optional=_TAGS | {"algorithm", "bits"},
        updatable=_TAGS,
        outputs=("id", "key_name", "fingerprint", "public_key", "private_key_path"),
        sensitive_outputs=frozenset({"private_key"}),
    ),
    ResourceKind.INSTANCE: KindSchema(
        kind=ResourceKind.INSTANCE,
        required=frozenset({"ami", "instance_type", "subnet"}),
        optional=_TAGS
        | {"key_name", "security_groups", "associate_public_ip_address", "user_data"},
        updatable=_TAGS | {"instance_type", "security_groups"},
        outputs=("id", "public_ip", "private_ip"),
        links={"subnet": (ResourceKind.SUBNET,)},
        supports_provisioners=True,
    ),
    ResourceKind.LOCAL_FILE: KindSchema(
        kind=ResourceKind.LOCAL_FILE,
        required=frozenset({"path", "content"}),
        optional=frozenset({"permissions"}),
        updatable=frozenset({"content", "permissions"}),
        outputs=("id", "path", "sha256"),
        handler="local",
    ),
}


def schema_for(kind: ResourceKind) -> KindSchema:
    """Return the schema registered for *kind*."""
    return SCHEMAS[kind]


__all__ = ["Handler", "KindSchema", "ResourceKind", "SCHEMAS", "schema_for"]
