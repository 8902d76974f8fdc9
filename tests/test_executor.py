"""Tests for the plan executor."""
from __future__ import annotations

import stat
import threading
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import pytest

from stratactl.errors import (
    FatalProviderError,
    InvalidParameterError,
    PartialApplyFailure,
    RateLimitedError,
)
from stratactl.executor import (
    ApplyReport,
    Executor,
    ExecutorOptions,
    OperationStatus,
    ProvisionerOptions,
)
from stratactl.exit_codes import ExitCode
from stratactl.graph import build
from stratactl.planner import Action, Operation, Plan, Unknown, plan
from stratactl.providers import MemoryCloudAPI, ProviderResource, SSHClient
from stratactl.resources import Reference, ResourceKind, parse
from stratactl.state import FileStateStore, InMemoryStateStore, StateStore

INSTANCE = (ResourceKind.INSTANCE, "bastion")


def _apply(
    document: Mapping[str, object],
    *,
    cloud: MemoryCloudAPI | None = None,
    store: StateStore | None = None,
    sleeps: list[float] | None = None,
    ssh: SSHClient | None = None,
    options: ExecutorOptions | None = None,
    destroy: bool = False,
) -> tuple[ApplyReport, StateStore, MemoryCloudAPI]:
    cloud = cloud if cloud is not None else MemoryCloudAPI()
    store = store if store is not None else InMemoryStateStore()
    delays = sleeps if sleeps is not None else []
    graph = None if destroy else build(parse(dict(document)))
    executor = Executor(
        cloud,
        store,
        options=options,
        provisioner_options=ProvisionerOptions(max_attempts=5, base_delay=2.0, max_delay=30.0),
        ssh_client=ssh,
        sleep=delays.append,
    )
    report = executor.apply(plan(graph, store.load(), destroy=destroy))
    return report, store, cloud


def _two_branches() -> dict[str, object]:
    return {
        "resources": [
            {"kind": "Network", "name": "a", "attributes": {"cidr_block": "10.0.0.0/16"}},
            {"kind": "Network", "name": "b", "attributes": {"cidr_block": "10.1.0.0/16"}},
            {
                "kind": "Subnet",
                "name": "a",
                "attributes": {"network": "${Network.a}", "cidr_block": "10.0.1.0/24"},
            },
            {
                "kind": "Subnet",
                "name": "b",
                "attributes": {"network": "${Network.b}", "cidr_block": "10.1.1.0/24"},
            },
        ]
    }


def test_apply_creates_resources_and_records_state(network_doc: dict[str, object]) -> None:
    """A clean apply succeeds and records provider ids and outputs."""
    report, store, cloud = _apply(network_doc)

    assert report.summary.exit_code == ExitCode.OK
    assert report.summary.totals[OperationStatus.SUCCEEDED] == 2
    observed = store.load()
    subnet = observed.get((ResourceKind.SUBNET, "public"))
    network = observed.get((ResourceKind.NETWORK, "main"))
    assert subnet is not None and network is not None
    assert subnet.attributes["network"] == "${Network.main}"
    assert subnet.depends_on == ("Network.main",)
    assert subnet.outputs["availability_zone"] == "zone-a"
    created = cloud.get(subnet.id)
    assert created is not None and created["network"] == network.id
    assert report.metadata is not None and report.metadata["operation_count"] == 2


def test_rate_limited_call_is_retried_with_growing_delays(
    network_doc: dict[str, object], sleeps: list[float]
) -> None:
    """Throttled calls back off exponentially and then succeed."""
    cloud = MemoryCloudAPI()
    cloud.inject("create_network", RateLimitedError("slow down"), RateLimitedError("slow down"))

    report, _, _ = _apply(network_doc, cloud=cloud, sleeps=sleeps)

    result = report.result_for("create:Network.main")
    assert result.status is OperationStatus.SUCCEEDED
    assert result.attempts == 3
    assert sleeps == [0.5, 1.0]
    assert report.summary.ok


def test_retry_budget_exhaustion_fails_and_blocks_dependents(
    network_doc: dict[str, object], sleeps: list[float]
) -> None:
    """After the last attempt the error surfaces and dependents are blocked."""
    cloud = MemoryCloudAPI()
    cloud.inject("create_network", *[RateLimitedError("slow down") for _ in range(5)])

    report, store, _ = _apply(network_doc, cloud=cloud, sleeps=sleeps)

    network = report.result_for("create:Network.main")
    assert network.status is OperationStatus.FAILED
    assert network.attempts == 5
    assert network.error_type == "RateLimitedError"
    assert sleeps == [0.5, 1.0, 2.0, 4.0]
    subnet = report.result_for("create:Subnet.public")
    assert subnet.status is OperationStatus.BLOCKED
    assert subnet.error == "blocked by create:Network.main"
    assert report.summary.exit_code == ExitCode.PARTIAL_APPLY
    assert len(store.load()) == 0


def test_non_retryable_error_is_not_retried(network_doc: dict[str, object], sleeps: list[float]) -> None:
    """Invalid parameters fail on the first attempt."""
    cloud = MemoryCloudAPI()
    cloud.inject("create_subnet", InvalidParameterError("bad cidr"))

    report, store, _ = _apply(network_doc, cloud=cloud, sleeps=sleeps)

    subnet = report.result_for("create:Subnet.public")
    assert subnet.status is OperationStatus.FAILED
    assert subnet.attempts == 1
    assert sleeps == []
    assert (ResourceKind.NETWORK, "main") in store.load()
    with pytest.raises(PartialApplyFailure):
        report.raise_for_status()


def test_failure_only_blocks_its_own_branch(sleeps: list[float]) -> None:
    """An unrelated branch keeps going when another branch fails."""
    cloud = MemoryCloudAPI()
    cloud.inject("create_network", InvalidParameterError("quota exceeded"))

    report, store, _ = _apply(
        _two_branches(), cloud=cloud, sleeps=sleeps, options=ExecutorOptions(max_concurrency=1)
    )

    assert report.resource_status("Network.a") is OperationStatus.FAILED
    assert report.resource_status("Subnet.a") is OperationStatus.BLOCKED
    assert report.resource_status("Network.b") is OperationStatus.SUCCEEDED
    assert report.resource_status("Subnet.b") is OperationStatus.SUCCEEDED
    assert {entry.address for entry in store.load()} == {"Network.b", "Subnet.b"}


def test_fatal_error_cancels_pending_operations() -> None:
    """A fatal provider error stops dispatch and exits with the provider code."""
    cloud = MemoryCloudAPI()
    cloud.inject("create_network", FatalProviderError("credentials revoked"))

    report, _, _ = _apply(_two_branches(), cloud=cloud, options=ExecutorOptions(max_concurrency=1))

    assert report.result_for("create:Network.a").status is OperationStatus.FAILED
    assert report.result_for("create:Network.b").status is OperationStatus.CANCELLED
    assert report.result_for("create:Network.b").error == "fatal provider error"
    assert report.summary.fatal is True
    assert report.summary.exit_code == ExitCode.PROVIDER


class _CancellingCloud(MemoryCloudAPI):
    """Simulated cloud that requests cancellation after the first network."""

    def __init__(self) -> None:
        super().__init__()
        self.on_network: Callable[[], None] = lambda: None

    def create_network(self, params: Mapping[str, Any]) -> ProviderResource:
        resource = super().create_network(params)
        self.on_network()
        return resource


def test_cancel_lets_in_flight_work_finish() -> None:
    """Cancellation stops new dispatches; the running operation completes."""
    cloud = _CancellingCloud()
    store = InMemoryStateStore()
    executor = Executor(
        cloud,
        store,
        options=ExecutorOptions(max_concurrency=1),
        sleep=lambda _: None,
    )
    cloud.on_network = executor.cancel
    the_plan = plan(build(parse(_two_branches())), store.load())

    report = executor.apply(the_plan)

    assert report.result_for("create:Network.a").status is OperationStatus.SUCCEEDED
    cancelled = [r.key for r in report.results if r.status is OperationStatus.CANCELLED]
    assert cancelled == ["create:Network.b", "create:Subnet.a", "create:Subnet.b"]


class _GatedCloud(MemoryCloudAPI):
    """Simulated cloud whose network creates wait for each other."""

    def __init__(self, parties: int) -> None:
        super().__init__()
        self.barrier = threading.Barrier(parties, timeout=5)
        self.in_flight = 0
        self.peak = 0
        self._gauge = threading.Lock()

    def create_network(self, params: Mapping[str, Any]) -> ProviderResource:
        with self._gauge:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            self.barrier.wait()
            return super().create_network(params)
        finally:
            with self._gauge:
                self.in_flight -= 1


@pytest.mark.mutation_timeout
def test_independent_operations_run_up_to_max_concurrency() -> None:
    """Independent creates overlap, never exceeding the configured limit."""
    document = {
        "resources": [
            {
                "kind": "Network",
                "name": f"n{index}",
                "attributes": {"cidr_block": f"10.{index}.0.0/16"},
            }
            for index in range(6)
        ]
    }
    cloud = _GatedCloud(parties=3)

    report, store, _ = _apply(document, cloud=cloud, options=ExecutorOptions(max_concurrency=3))

    assert report.summary.totals[OperationStatus.SUCCEEDED] == 6
    assert cloud.peak == 3
    assert len(store.load()) == 6


def test_executor_options_require_a_retry() -> None:
    """A single attempt would leave throttled calls unretried."""
    with pytest.raises(ValueError, match="retry_attempts"):
        ExecutorOptions(retry_attempts=1)


def test_executor_refuses_secret_output_as_attribute(tmp_path: Path) -> None:
    """A hand-built plan cannot smuggle a private key into a file's content."""
    leak = tmp_path / "leak.txt"
    secret = Reference(ResourceKind.KEY_PAIR, "k", "private_key")
    operation = Operation(
        key="create:LocalFile.leak",
        action=Action.CREATE,
        kind=ResourceKind.LOCAL_FILE,
        name="leak",
        inputs={"path": str(leak), "content": Unknown(secret)},
    )

    report = Executor(MemoryCloudAPI(), InMemoryStateStore(), sleep=lambda _: None).apply(
        Plan(operations=(operation,))
    )

    result = report.result_for("create:LocalFile.leak")
    assert result.status is OperationStatus.FAILED
    assert result.error_type == "UnresolvedReferenceError"
    assert "secret outputs only feed provisioner connections" in (result.error or "")
    assert not leak.exists()


def test_operation_without_recorded_state_fails_cleanly() -> None:
    """Updates and deletes with nothing recorded fail instead of crashing."""
    operations = (
        Operation(
            key="update:Network.main",
            action=Action.UPDATE,
            kind=ResourceKind.NETWORK,
            name="main",
            inputs={"cidr_block": "10.0.0.0/16"},
        ),
        Operation(
            key="delete:Network.gone",
            action=Action.DELETE,
            kind=ResourceKind.NETWORK,
            name="gone",
        ),
    )

    report = Executor(MemoryCloudAPI(), InMemoryStateStore(), sleep=lambda _: None).apply(
        Plan(operations=operations)
    )

    update = report.result_for("update:Network.main")
    assert update.status is OperationStatus.FAILED
    assert update.error == "Network.main has no recorded state to update."
    delete = report.result_for("delete:Network.gone")
    assert delete.status is OperationStatus.FAILED
    assert delete.error == "Network.gone has no recorded state to delete."
    assert report.metadata is not None and report.metadata["cancelled"] is True
    assert report.summary.exit_code == ExitCode.PARTIAL_APPLY
    assert [entry.address for entry in store.load()] == ["Network.a"]


def test_destroy_deletes_in_reverse_order(network_doc: dict[str, object]) -> None:
    """Destroy removes every resource without provider conflicts."""
    _, store, cloud = _apply(network_doc)

    report, store, cloud = _apply(network_doc, cloud=cloud, store=store, destroy=True)

    assert report.summary.ok
    assert [r.key for r in report.results] == ["delete:Subnet.public", "delete:Network.main"]
    assert len(store.load()) == 0
    assert cloud.ids() == []
    assert cloud.call_names() == [
        "create_network",
        "create_subnet",
        "delete_subnet",
        "delete_network",
    ]


def test_delete_of_missing_object_counts_as_success(network_doc: dict[str, object]) -> None:
    """An object already gone at the provider is dropped from state with a warning."""
    _, store, cloud = _apply(network_doc)
    subnet = store.load().get((ResourceKind.SUBNET, "public"))
    assert subnet is not None
    cloud.delete_subnet(subnet.id)

    report, store, _ = _apply(network_doc, cloud=cloud, store=store, destroy=True)

    result = report.result_for("delete:Subnet.public")
    assert result.status is OperationStatus.SUCCEEDED
    assert "already deleted" in result.warnings[0]
    assert len(store.load()) == 0


def test_create_first_replacement_swaps_without_conflict(network_doc: dict[str, object]) -> None:
    """A replaced security group is deleted only after the instance moved off it."""
    document = {
        "resources": [
            *network_doc["resources"],  # type: ignore[misc]
            {
                "kind": "SecurityGroup",
                "name": "web",
                "attributes": {"network": "${Network.main}", "name": "web"},
            },
            {
                "kind": "Instance",
                "name": "web",
                "attributes": {
                    "ami": "ami-1",
                    "instance_type": "t3.micro",
                    "subnet": "${Subnet.public}",
                    "security_groups": ["${SecurityGroup.web}"],
                },
            },
        ]
    }
    _, store, cloud = _apply(document)
    old_group = store.load().get((ResourceKind.SECURITY_GROUP, "web"))
    assert old_group is not None
    document["resources"][2]["attributes"]["name"] = "web-v2"  # type: ignore[index]

    report, store, cloud = _apply(document, cloud=cloud, store=store)

    assert report.summary.ok, report.to_dict()
    new_group = store.load().get((ResourceKind.SECURITY_GROUP, "web"))
    instance = store.load().get((ResourceKind.INSTANCE, "web"))
    assert new_group is not None and instance is not None
    assert new_group.id != old_group.id
    assert cloud.get(old_group.id) is None
    live = cloud.get(instance.id)
    assert live is not None and live["security_groups"] == [new_group.id]


def test_bastion_apply_provisions_and_keeps_secrets_out_of_state(
    tmp_path: Path, bastion_doc: dict[str, object], fake_ssh: Any
) -> None:
    """A full apply provisions the instance over its elastic IP."""
    file_store = FileStateStore(tmp_path / "state")

    report, store, cloud = _apply(bastion_doc, store=file_store, ssh=fake_ssh)

    assert report.summary.ok, report.to_dict()
    observed = store.load()
    instance = observed.get(INSTANCE)
    address = observed.get((ResourceKind.ELASTIC_IP, "bastion"))
    key_pair = observed.get((ResourceKind.KEY_PAIR, "deployer"))
    assert instance is not None and address is not None and key_pair is not None
    assert instance.provisioned is True
    assert instance.tainted is False

    public_ip = address.outputs["public_ip"]
    assert fake_ssh.attempts == [(public_ip, 22, "admin", key_pair.outputs["fingerprint"])]
    assert fake_ssh.transfers == [(public_ip, tmp_path / "motd.txt", "/etc/motd")]
    assert fake_ssh.closed == 1
    assert (tmp_path / "out" / "address").read_text(encoding="utf-8") == public_ip

    private_key = tmp_path / "keys" / "deployer"
    public_key = tmp_path / "keys" / "deployer.pub"
    assert stat.S_IMODE(private_key.stat().st_mode) == 0o600
    assert stat.S_IMODE(public_key.stat().st_mode) == 0o644
    state_text = file_store.path.read_text(encoding="utf-8")
    assert "PRIVATE KEY" not in state_text
    assert "PRIVATE KEY" not in str(report.to_dict())
    assert key_pair.outputs["private_key_path"] == str(private_key)
    registered = cloud.get(key_pair.id)
    assert registered is not None and "PRIVATE" not in str(registered)


def test_provisioner_timeout_taints_instance(
    tmp_path: Path,
    bastion_doc: dict[str, object],
    make_ssh: Callable[[int], Any],
    sleeps: list[float],
) -> None:
    """An unreachable host fails after five attempts and taints the instance."""
    ssh = make_ssh(100)
    store = InMemoryStateStore()

    report, store, cloud = _apply(bastion_doc, store=store, ssh=ssh, sleeps=sleeps)

    provision = report.result_for("provision:Instance.bastion")
    assert provision.status is OperationStatus.FAILED
    assert provision.error_type == "ProvisionerTimeoutError"
    assert provision.attempts == 5
    assert len(ssh.attempts) == 5
    assert sleeps == [2.0, 4.0, 8.0, 16.0]
    assert report.resource_status("Instance.bastion") is OperationStatus.SUCCEEDED
    for address in ("Network.main", "Subnet.public", "SecurityGroup.ssh", "ElasticIP.bastion"):
        assert report.resource_status(address) is OperationStatus.SUCCEEDED
    assert report.summary.exit_code == ExitCode.PARTIAL_APPLY

    instance = store.load().get(INSTANCE)
    assert instance is not None
    assert instance.provisioned is False
    assert instance.tainted is True
    assert any("tainted" in warning for warning in provision.warnings)

    again = plan(build(parse(bastion_doc)), store.load())
    assert again.get("create:Instance.bastion").reason == "tainted"
    assert again.get("delete:Instance.bastion").replacement is True


def test_keep_policy_leaves_instance_for_reprovisioning(
    bastion_doc: dict[str, object], make_ssh: Callable[[int], Any]
) -> None:
    """With ``keep`` the instance stays and only the provision step is retried."""
    report, store, cloud = _apply(
        bastion_doc, ssh=make_ssh(100), options=ExecutorOptions(failure_policy="keep")
    )
    assert report.result_for("provision:Instance.bastion").status is OperationStatus.FAILED
    instance = store.load().get(INSTANCE)
    assert instance is not None
    assert (instance.provisioned, instance.tainted) == (False, False)

    retry, store, _ = _apply(bastion_doc, cloud=cloud, store=store, ssh=make_ssh(0))

    assert [r.key for r in retry.results if r.action is not Action.NOOP] == [
        "provision:Instance.bastion"
    ]
    assert retry.summary.ok
    refreshed = store.load().get(INSTANCE)
    assert refreshed is not None and refreshed.provisioned is True


def test_destroy_policy_removes_failed_instance(
    bastion_doc: dict[str, object], make_ssh: Callable[[int], Any]
) -> None:
    """With ``destroy`` the unreachable instance is deleted and forgotten."""
    report, store, cloud = _apply(
        bastion_doc, ssh=make_ssh(100), options=ExecutorOptions(failure_policy="destroy")
    )

    assert report.result_for("provision:Instance.bastion").status is OperationStatus.FAILED
    assert INSTANCE not in store.load()
    assert cloud.ids("instance") == []

    again = plan(build(parse(bastion_doc)), store.load())
    assert again.get("create:Instance.bastion").action is Action.CREATE
    assert again.get("update:ElasticIP.bastion").changed == ("instance",)


def test_provisioner_recovers_after_refused_connections(
    bastion_doc: dict[str, object], make_ssh: Callable[[int], Any], sleeps: list[float]
) -> None:
    """A host that comes up on the third attempt is provisioned."""
    ssh = make_ssh(2)

    report, store, _ = _apply(bastion_doc, ssh=ssh, sleeps=sleeps)

    provision = report.result_for("provision:Instance.bastion")
    assert provision.status is OperationStatus.SUCCEEDED
    assert provision.attempts == 3
    assert sleeps == [2.0, 4.0]
    instance = store.load().get(INSTANCE)
    assert instance is not None and instance.provisioned is True


def test_local_file_left_in_place_when_changed_externally(tmp_path: Path) -> None:
    """Deleting a LocalFile whose content was edited keeps the file."""
    target = tmp_path / "notes.txt"
    document = {
        "resources": [
            {
                "kind": "LocalFile",
                "name": "notes",
                "attributes": {"path": str(target), "content": "v1", "permissions": "0600"},
            }
        ]
    }
    _, store, cloud = _apply(document)
    assert stat.S_IMODE(target.stat().st_mode) == 0o600
    target.write_text("edited", encoding="utf-8")

    report, store, _ = _apply(document, cloud=cloud, store=store, destroy=True)

    result = report.result_for("delete:LocalFile.notes")
    assert result.status is OperationStatus.SUCCEEDED
    assert "content changed" in result.warnings[0]
    assert target.read_text(encoding="utf-8") == "edited"
    assert len(store.load()) == 0
