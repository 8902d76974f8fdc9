"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path

import pytest

from stratactl.credentials import Credential
from stratactl.errors import SSHConnectionError


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


class FakeSession:
    """Session that records transfers instead of running scp."""

    def __init__(self, client: FakeSSHClient, host: str) -> None:
        self._client = client
        self._host = host

    def put_file(self, local_path: Path, remote_path: str) -> None:
        self._client.transfers.append((self._host, Path(local_path), remote_path))

    def close(self) -> None:
        self._client.closed += 1


class FakeSSHClient:
    """SSH client that refuses the first *failures* connections."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.attempts: list[tuple[str, int, str, str]] = []
        self.transfers: list[tuple[str, Path, str]] = []
        self.closed = 0

    def connect(self, host: str, port: int, user: str, credential: Credential) -> FakeSession:
        self.attempts.append((host, port, user, credential.fingerprint))
        if len(self.attempts) <= self.failures:
            raise SSHConnectionError(f"Connection to {host}:{port} refused")
        return FakeSession(self, host)


@pytest.fixture
def fake_ssh() -> FakeSSHClient:
    """Return an SSH client that always connects."""
    return FakeSSHClient()


@pytest.fixture
def make_ssh() -> Callable[[int], FakeSSHClient]:
    """Return a factory for SSH clients that refuse the first N connections."""
    return FakeSSHClient


@pytest.fixture
def sleeps() -> list[float]:
    """Collect delays passed to the executor's sleep hook."""
    return []


def _network_resources() -> list[dict[str, object]]:
    return [
        {"kind": "Network", "name": "main", "attributes": {"cidr_block": "10.0.0.0/16"}},
        {
            "kind": "Subnet",
            "name": "public",
            "attributes": {"network": "${Network.main}", "cidr_block": "10.0.1.0/24"},
        },
    ]


def _bastion_document(root: Path) -> dict[str, object]:
    motd = root / "motd.txt"
    motd.write_text("hello\n", encoding="utf-8")
    return {
        "resources": [
            *_network_resources(),
            {"kind": "InternetGateway", "name": "main", "attributes": {"network": "${Network.main}"}},
            {
                "kind": "RouteTable",
                "name": "public",
                "attributes": {
                    "network": "${Network.main}",
                    "routes": [{"destination": "0.0.0.0/0", "gateway": "${InternetGateway.main}"}],
                },
            },
            {
                "kind": "RouteTableAssociation",
                "name": "public",
                "attributes": {"route_table": "${RouteTable.public}", "subnet": "${Subnet.public}"},
            },
            {
                "kind": "SecurityGroup",
                "name": "ssh",
                "attributes": {
                    "network": "${Network.main}",
                    "name": "ssh",
                    "ingress": [{"protocol": "tcp", "port": 22, "cidr": "0.0.0.0/0"}],
                },
            },
            {
                "kind": "KeyPair",
                "name": "deployer",
                "attributes": {
                    "key_name": "deployer",
                    "algorithm": "ed25519",
                    "private_key_path": str(root / "keys" / "deployer"),
                    "public_key_path": str(root / "keys" / "deployer.pub"),
                },
            },
            {
                "kind": "Instance",
                "name": "bastion",
                "attributes": {
                    "ami": "ami-1",
                    "instance_type": "t3.micro",
                    "subnet": "${Subnet.public}",
                    "key_name": "${KeyPair.deployer.key_name}",
                    "security_groups": ["${SecurityGroup.ssh}"],
                },
                "provisioners": [
                    {
                        "type": "file",
                        "source": str(motd),
                        "destination": "/etc/motd",
                        "connection": {
                            "host": "${ElasticIP.bastion.public_ip}",
                            "user": "admin",
                            "private_key": "${KeyPair.deployer.private_key}",
                        },
                    }
                ],
            },
            {"kind": "ElasticIP", "name": "bastion", "attributes": {"instance": "${Instance.bastion}"}},
            {
                "kind": "LocalFile",
                "name": "address",
                "attributes": {
                    "path": str(root / "out" / "address"),
                    "content": "${ElasticIP.bastion.public_ip}",
                },
            },
        ]
    }


@pytest.fixture
def network_doc() -> dict[str, object]:
    """Return a network with one subnet, the smallest useful document."""
    return {"resources": _network_resources()}


@pytest.fixture
def bastion_doc(tmp_path: Path) -> dict[str, object]:
    """Return a provisioned bastion document whose files live under ``tmp_path``."""
    return _bastion_document(tmp_path)
