"""Tests for dependency graph construction."""
from __future__ import annotations

import pytest

from stratactl.errors import CycleError, UnresolvedReferenceError
from stratactl.graph import build
from stratactl.resources import Reference, ResourceDescriptor, ResourceKind, parse

NETWORK = (ResourceKind.NETWORK, "main")
SUBNET = (ResourceKind.SUBNET, "public")
GATEWAY = (ResourceKind.INTERNET_GATEWAY, "main")


def _document() -> dict[str, object]:
    return {
        "resources": [
            {
                "kind": "Subnet",
                "name": "public",
                "attributes": {"network": "${Network.main}", "cidr_block": "10.0.1.0/24"},
            },
            {"kind": "InternetGateway", "name": "main", "attributes": {"network": "${Network.main}"}},
            {"kind": "Network", "name": "main", "attributes": {"cidr_block": "10.0.0.0/16"}},
        ]
    }


def test_build_records_edges_both_ways() -> None:
    """Each reference adds a dependency and the matching dependent edge."""
    graph = build(parse(_document()))

    assert len(graph) == 3
    assert graph.dependencies(SUBNET) == {NETWORK}
    assert graph.dependents(NETWORK) == {SUBNET, GATEWAY}
    assert graph.transitive_dependents(NETWORK) == {SUBNET, GATEWAY}
    assert graph.dependencies(NETWORK) == set()


def test_topological_order_puts_dependencies_first() -> None:
    """Dependencies come first; independent resources keep declaration order."""
    graph = build(parse(_document()))

    order = [resource.address for resource in graph.topological_order()]

    assert order == ["Network.main", "Subnet.public", "InternetGateway.main"]


def test_depends_on_hint_adds_edge() -> None:
    """An explicit depends_on creates an edge with no attribute reference."""
    document = _document()
    resources = document["resources"]
    assert isinstance(resources, list)
    resources.append(
        {
            "kind": "LocalFile",
            "name": "marker",
            "attributes": {"path": "/tmp/marker", "content": "ready"},
            "depends_on": ["InternetGateway.main"],
        }
    )

    graph = build(parse(document))

    assert graph.dependencies((ResourceKind.LOCAL_FILE, "marker")) == {GATEWAY}
    assert graph.transitive_dependents(NETWORK) >= {(ResourceKind.LOCAL_FILE, "marker")}


def test_cycle_is_reported_with_participants() -> None:
    """Mutual references are rejected and every participant is named."""
    document = {
        "resources": [
            {
                "kind": "Network",
                "name": "a",
                "attributes": {"cidr_block": "10.0.0.0/16"},
                "depends_on": ["Network.b"],
            },
            {
                "kind": "Network",
                "name": "b",
                "attributes": {"cidr_block": "10.1.0.0/16"},
                "depends_on": ["Network.a"],
            },
        ]
    }

    with pytest.raises(CycleError) as excinfo:
        build(parse(document))

    assert set(excinfo.value.participants) == {"Network.a", "Network.b"}
    assert "Dependency cycle detected" in str(excinfo.value)


def test_self_reference_is_a_cycle() -> None:
    """A resource that depends on itself forms a one-node cycle."""
    resource = ResourceDescriptor(
        kind=ResourceKind.NETWORK,
        name="loop",
        attributes={"cidr_block": "10.0.0.0/16"},
        depends_on=(Reference(ResourceKind.NETWORK, "loop"),),
    )

    with pytest.raises(CycleError) as excinfo:
        build([resource])

    assert excinfo.value.participants == ("Network.loop",)


def test_build_rejects_unknown_reference() -> None:
    """Descriptors built by hand still have their references checked."""
    resource = ResourceDescriptor(
        kind=ResourceKind.SUBNET,
        name="orphan",
        attributes={"network": Reference(ResourceKind.NETWORK, "missing"), "cidr_block": "10.0.0.0/24"},
    )

    with pytest.raises(UnresolvedReferenceError):
        build([resource])


def test_provisioner_references_do_not_add_edges() -> None:
    """An instance provisioned through its elastic IP does not loop back on it."""
    document = {
        "resources": [
            {"kind": "Network", "name": "main", "attributes": {"cidr_block": "10.0.0.0/16"}},
            {
                "kind": "Subnet",
                "name": "public",
                "attributes": {"network": "${Network.main}", "cidr_block": "10.0.1.0/24"},
            },
            {
                "kind": "Instance",
                "name": "web",
                "attributes": {"ami": "ami-1", "instance_type": "t3.micro", "subnet": "${Subnet.public}"},
                "provisioners": [
                    {
                        "type": "file",
                        "source": "motd",
                        "destination": "/etc/motd",
                        "connection": {
                            "host": "${ElasticIP.web.public_ip}",
                            "user": "admin",
                            "private_key": "/keys/id",
                        },
                    }
                ],
            },
            {"kind": "ElasticIP", "name": "web", "attributes": {"instance": "${Instance.web}"}},
        ]
    }

    graph = build(parse(document))

    instance = (ResourceKind.INSTANCE, "web")
    assert graph.dependencies((ResourceKind.ELASTIC_IP, "web")) == {instance}
    assert graph.dependencies(instance) == {SUBNET}
